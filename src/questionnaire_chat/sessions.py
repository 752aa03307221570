"""Per-questionnaire session: answer editing, regeneration, and chat replies."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from .backend_client import AnswerGenerator, BackendError, QuestionnaireBackend
from .cache_store import QuestionnaireCache
from .models import (
    REGENERATING_PLACEHOLDER,
    AnswerState,
    Questionnaire,
    QuestionAnswer,
    from_remote,
    question_from_remote,
)
from .reconciliation import (
    LoadOutcome,
    LoadState,
    QuestionnaireReconciler,
    RedirectCallback,
    UpdateObserver,
)
from .transcript import Message, event_message, project

logger = logging.getLogger(__name__)


class AnswerPhase(str, Enum):
    """Lifecycle of a single answer slot."""

    IDLE = "idle"
    GENERATING = "generating"
    EDITING = "editing"
    SAVING = "saving"


@dataclass(slots=True)
class SaveResult:
    """Outcome of a question or answer save."""

    index: int
    text: str
    persisted_remotely: bool
    message: Message


@dataclass(slots=True)
class RegenerateResult:
    """Outcome of regenerating one answer."""

    index: int
    answer: str
    state: AnswerState
    mirrored: bool
    message: Message


HELP_KEYWORDS = ("help", "how")
PROGRESS_KEYWORDS = ("progress", "status")
BEST_PRACTICE_KEYWORDS = ("best practice", "example")


class QuestionnaireSession:
    """Encapsulates the state machine for a single open questionnaire."""

    def __init__(
        self,
        questionnaire_id: str,
        *,
        backend: QuestionnaireBackend,
        generator: AnswerGenerator,
        cache: QuestionnaireCache,
        reconciler: Optional[QuestionnaireReconciler] = None,
    ) -> None:
        self.questionnaire_id = questionnaire_id
        self._backend = backend
        self._generator = generator
        self._cache = cache
        self._reconciler = reconciler or QuestionnaireReconciler(
            backend, generator, cache
        )
        self.record: Optional[Questionnaire] = None
        self.load_outcome: Optional[LoadOutcome] = None
        self.editing_index: Optional[int] = None
        self.edit_buffer = ""
        self.events: List[Message] = []
        self._phases: Dict[int, AnswerPhase] = {}
        self._closed = False
        self._pass_token: Optional[int] = None
        self._load_task: Optional["asyncio.Task[LoadOutcome]"] = None
        self._found = asyncio.Event()

    @classmethod
    async def open(
        cls,
        questionnaire_id: str,
        *,
        backend: QuestionnaireBackend,
        generator: AnswerGenerator,
        cache: QuestionnaireCache,
        reconciler: Optional[QuestionnaireReconciler] = None,
        redirect: Optional[RedirectCallback] = None,
        on_update: Optional[UpdateObserver] = None,
    ) -> "QuestionnaireSession":
        session = cls(
            questionnaire_id,
            backend=backend,
            generator=generator,
            cache=cache,
            reconciler=reconciler,
        )
        await session.load(redirect=redirect, on_update=on_update)
        return session

    @property
    def load_state(self) -> LoadState:
        if self.load_outcome is not None:
            return self.load_outcome.state
        if self._pass_token is not None and self._reconciler.is_current(
            self.questionnaire_id, self._pass_token
        ):
            return self._reconciler.state_for(self.questionnaire_id)
        return LoadState.IDLE

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def loading(self) -> bool:
        return self._load_task is not None and not self._load_task.done()

    @property
    def load_task(self) -> Optional["asyncio.Task[LoadOutcome]"]:
        return self._load_task

    async def load(
        self,
        *,
        redirect: Optional[RedirectCallback] = None,
        on_update: Optional[UpdateObserver] = None,
    ) -> LoadOutcome:
        """Run reconciliation and adopt the record as soon as it is found.

        A pass superseded by a newer load of the same id leaves the session
        without a record.
        """

        async def _track(event: str, record: Questionnaire) -> None:
            if self._closed:
                return
            if event == "found":
                self.record = record
                self._found.set()
            if on_update is not None:
                outcome = on_update(event, record)
                if asyncio.iscoroutine(outcome):
                    await outcome

        self.load_outcome = None
        self._found.clear()
        # The reconciler claims the next token before its first await.
        self._pass_token = self._reconciler.current_token(self.questionnaire_id) + 1
        outcome = await self._reconciler.load(
            self.questionnaire_id,
            on_update=_track,
            redirect=redirect,
        )
        if self._closed:
            return outcome
        self.load_outcome = outcome
        if outcome.state is LoadState.READY:
            self.record = outcome.questionnaire
        else:
            self.record = None
        return outcome

    def start(
        self,
        *,
        redirect: Optional[RedirectCallback] = None,
        on_update: Optional[UpdateObserver] = None,
    ) -> "asyncio.Task[LoadOutcome]":
        """Run :meth:`load` on a background task, reusing one still in flight."""

        if self.loading:
            return self._load_task
        self._found.clear()
        self._load_task = asyncio.create_task(
            self.load(redirect=redirect, on_update=on_update)
        )
        return self._load_task

    async def wait_visible(self) -> None:
        """Wait until the record is found or the background load ends.

        Answer generation may still be running when this returns.
        """

        task = self._load_task
        if task is None:
            return
        waiter = asyncio.ensure_future(self._found.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
        if task.done() and not task.cancelled():
            task.result()

    async def wait_loaded(self) -> None:
        task = self._load_task
        if task is None:
            return
        await asyncio.wait({task})
        if not task.cancelled():
            task.result()

    def close(self) -> None:
        """Abandon the session; late results become no-ops."""

        self._closed = True
        if self._pass_token is not None and self._reconciler.is_current(
            self.questionnaire_id, self._pass_token
        ):
            self._reconciler.abandon(self.questionnaire_id)
        if self._load_task is not None and not self._load_task.done():
            self._load_task.cancel()
        if self.load_outcome and self.load_outcome.redirect_handle:
            self.load_outcome.redirect_handle.cancel()

    def phase_for(self, index: int) -> AnswerPhase:
        phase = self._phases.get(index)
        if phase is not None:
            return phase
        if self.editing_index == index:
            return AnswerPhase.EDITING
        record = self._require_record()
        if 0 <= index < len(record.answers) and record.answers[index].is_loading:
            return AnswerPhase.GENERATING
        return AnswerPhase.IDLE

    def begin_edit(self, index: int) -> str:
        item = self._answer_at(index)
        self.editing_index = index
        self.edit_buffer = item.answer
        return self.edit_buffer

    def cancel_edit(self, index: int) -> None:
        if self.editing_index != index:
            return
        self.editing_index = None
        self.edit_buffer = ""

    async def save_edit(self, index: int, text: str) -> Optional[SaveResult]:
        """Save an edited answer, remote first with a local fallback."""

        record = self._require_record()
        item = self._answer_at(index)
        self._phases[index] = AnswerPhase.SAVING
        try:
            persisted = False
            response: Any = None
            if item.question_id:
                try:
                    response = await self._backend.update_question(
                        self.questionnaire_id,
                        item.question_id,
                        answer=text,
                    )
                    persisted = True
                except BackendError as exc:
                    logger.warning(
                        "Backend answer save failed for %s[%s], saving locally: %s",
                        self.questionnaire_id,
                        index,
                        exc,
                    )
            else:
                logger.info(
                    "Answer %s[%s] has no question id; saving locally",
                    self.questionnaire_id,
                    index,
                )
            if not self._is_live(record, index, item):
                logger.debug("Discarding stale save for %s[%s]", self.questionnaire_id, index)
                return None

            adopted = self._server_question(response, index, item) if persisted else None
            if adopted is not None:
                if adopted.question.strip():
                    item.question = adopted.question
                item.apply_manual(adopted.answer or text)
            else:
                item.apply_manual(text)
            record.refresh_progress()
            self._persist(record)
            if self.editing_index == index:
                self.editing_index = None
                self.edit_buffer = ""
            where = "saved to database" if persisted else "saved locally"
            message = self._push_event(
                f"**Answer updated successfully!** ({where})",
                question_index=index,
            )
            return SaveResult(
                index=index,
                text=item.answer,
                persisted_remotely=persisted,
                message=message,
            )
        finally:
            self._phases.pop(index, None)

    async def rename_question(self, index: int, text: str) -> Optional[SaveResult]:
        """Change a question's wording; its category follows the new text."""

        new_text = text.strip()
        if not new_text:
            raise ValueError("Question text must not be empty.")
        record = self._require_record()
        item = self._answer_at(index)
        self._phases[index] = AnswerPhase.SAVING
        try:
            persisted = False
            if item.question_id:
                try:
                    await self._backend.update_question(
                        self.questionnaire_id,
                        item.question_id,
                        question_text=new_text,
                    )
                    persisted = True
                except BackendError as exc:
                    logger.warning(
                        "Backend question update failed for %s[%s]: %s",
                        self.questionnaire_id,
                        index,
                        exc,
                    )
            if not self._is_live(record, index, item):
                return None
            item.question = new_text
            self._persist(record)
            suffix = "" if persisted else " (saved locally)"
            message = self._push_event(
                f"**Question updated successfully!**{suffix}\n\n"
                f'The new question is: "{new_text}"\n\n'
                "Would you like me to generate a new AI answer for this "
                "updated question?",
                question_index=index,
                suggestions=[
                    "Generate AI answer",
                    "I'll write my own answer",
                    "Show examples",
                ],
            )
            return SaveResult(
                index=index,
                text=new_text,
                persisted_remotely=persisted,
                message=message,
            )
        finally:
            self._phases.pop(index, None)

    async def regenerate(self, index: int) -> Optional[RegenerateResult]:
        """Replace one answer with freshly generated text."""

        record = self._require_record()
        item = self._answer_at(index)
        if self.editing_index == index:
            self.cancel_edit(index)
        self._phases[index] = AnswerPhase.GENERATING
        try:
            item.mark_pending(REGENERATING_PLACEHOLDER)
            text = await self._generator.generate(item.question)
            if not self._is_live(record, index, item):
                logger.debug(
                    "Discarding stale regeneration for %s[%s]",
                    self.questionnaire_id,
                    index,
                )
                return None
            item.apply_generated(text)
            record.refresh_progress()
            self._persist(record)

            mirrored = False
            if item.question_id and item.state is AnswerState.GENERATED:
                try:
                    await self._backend.update_question(
                        self.questionnaire_id,
                        item.question_id,
                        answer=text,
                    )
                    mirrored = True
                except BackendError as exc:
                    logger.warning(
                        "Could not mirror regenerated answer %s[%s]: %s",
                        self.questionnaire_id,
                        index,
                        exc,
                    )
            if self._closed:
                return None

            if item.state is AnswerState.FAILED:
                content = (
                    "**Error generating answer**\n\n"
                    f"{text} You can also provide a manual response."
                )
                suggestions = ["Try again", "I'll write my own", "Show examples"]
            else:
                where = "Saved to database!" if mirrored else "Saved locally!"
                content = (
                    f"**AI-Generated Answer:**\n\n{text}\n\n"
                    f"*{where} You can edit this answer or regenerate a new "
                    "one if needed.*"
                )
                suggestions = [
                    "Edit this answer",
                    "Regenerate answer",
                    "Accept and continue",
                ]
            message = self._push_event(
                content,
                question_index=index,
                suggestions=suggestions,
            )
            return RegenerateResult(
                index=index,
                answer=text,
                state=item.state or AnswerState.FAILED,
                mirrored=mirrored,
                message=message,
            )
        finally:
            self._phases.pop(index, None)

    async def generate_missing(self) -> List[RegenerateResult]:
        """Regenerate every blank or failed answer concurrently."""

        record = self._require_record()
        targets = [
            index
            for index, item in enumerate(record.answers)
            if item.state in {AnswerState.EMPTY, AnswerState.FAILED}
            and self._phases.get(index) is None
        ]
        results = await asyncio.gather(*(self.regenerate(index) for index in targets))
        return [result for result in results if result is not None]

    def handle_user_message(self, user_text: str) -> List[Message]:
        """Answer a free-form chat message with contextual guidance."""

        normalized = user_text.strip()
        if not normalized:
            return []
        user_message = event_message(normalized, role="user")
        self.events.append(user_message)
        reply = self._reply_to(normalized.lower(), normalized)
        self.events.append(reply)
        return [user_message, reply]

    def transcript(self, category: Optional[str] = None) -> List[Message]:
        if self.record is None:
            if self.load_state is LoadState.NOT_FOUND:
                return [
                    Message(
                        id="not-found",
                        role="system",
                        content=(
                            "We couldn't find a questionnaire with ID "
                            f"{self.questionnaire_id}. You'll be redirected "
                            "to the questionnaires list shortly."
                        ),
                        suggestions=["View All Questionnaires", "Try Again"],
                    )
                ]
            return []
        return project(self.record, category) + list(self.events)

    def _reply_to(self, lowered: str, original: str) -> Message:
        if any(keyword in lowered for keyword in HELP_KEYWORDS):
            return event_message(
                "**I'm here to help!**\n\nI can assist you with:\n"
                "- Generating AI answers for compliance questions\n"
                "- Providing industry best practices\n"
                "- Suggesting improvements to your responses\n"
                "- Explaining compliance requirements\n\n"
                "What specific help do you need?",
                suggestions=[
                    "Generate all answers",
                    "Review my responses",
                    "Explain requirements",
                    "Show examples",
                ],
            )
        if any(keyword in lowered for keyword in PROGRESS_KEYWORDS):
            return self._progress_reply()
        if any(keyword in lowered for keyword in BEST_PRACTICE_KEYWORDS):
            return event_message(
                "**Compliance Best Practices:**\n\n"
                "**Security:** Always mention specific frameworks "
                "(ISO 27001, SOC 2)\n"
                "**Documentation:** Reference policies and procedures\n"
                "**Evidence:** Include audit trails and monitoring\n"
                "**Metrics:** Provide specific timelines and SLAs\n\n"
                "*Would you like examples for a specific question type?*",
                suggestions=[
                    "Show security examples",
                    "Data protection examples",
                    "Access control examples",
                ],
            )
        return event_message(
            f'**I understand!**\n\n"{original}"\n\n'
            "How can I help you with your compliance questionnaire?",
            suggestions=[
                "Generate AI answer",
                "Show best practices",
                "Review progress",
                "Get help",
            ],
        )

    def _progress_reply(self) -> Message:
        record = self.record
        if record is None:
            return event_message("No questionnaire is loaded yet.")
        answered = record.answered_count
        total = record.total_count
        remaining = total - answered
        if remaining == 0:
            closing = "Congratulations! You've completed all questions!"
            suggestions = ["Download report", "Review answers"]
        else:
            closing = f"Keep going! {remaining} questions remaining."
            suggestions = [
                "Generate remaining answers",
                "Continue with next question",
            ]
        return event_message(
            "**Current Progress:**\n\n"
            f"Completed: {answered}/{total} questions\n"
            f"Progress: {record.progress}%\n"
            f"Due: {record.due_date or 'not set'}\n"
            f"Status: {record.status.value}\n\n"
            f"{closing}",
            suggestions=suggestions,
        )

    def _require_record(self) -> Questionnaire:
        if self.record is None:
            raise RuntimeError(
                f"Questionnaire {self.questionnaire_id} is not loaded."
            )
        return self.record

    def _answer_at(self, index: int) -> QuestionAnswer:
        record = self._require_record()
        if index < 0 or index >= len(record.answers):
            raise IndexError(
                f"Question index {index} is out of range for "
                f"{self.questionnaire_id}."
            )
        return record.answers[index]

    def _is_live(
        self,
        record: Questionnaire,
        index: int,
        item: QuestionAnswer,
    ) -> bool:
        if self._closed or self.record is not record:
            return False
        return index < len(record.answers) and record.answers[index] is item

    def _persist(self, record: Questionnaire) -> None:
        snapshot = record.clone()

        def _merge(cached: Questionnaire) -> Questionnaire:
            merged = snapshot.clone()
            merged.extras = {**cached.extras, **snapshot.extras}
            return merged

        if not self._cache.upsert(record.id, _merge, default=snapshot):
            logger.warning(
                "Questionnaire %s could not be written to the cache", record.id
            )

    def _server_question(
        self,
        response: Any,
        index: int,
        item: QuestionAnswer,
    ) -> Optional[QuestionAnswer]:
        """Pick this answer's server representation out of a PUT response."""

        if not isinstance(response, Mapping):
            return None
        try:
            if "questions" in response or isinstance(
                response.get("questionnaire"), Mapping
            ):
                remote = from_remote(response)
                for candidate in remote.answers:
                    if candidate.question_id and candidate.question_id == item.question_id:
                        return candidate
                if index < len(remote.answers):
                    return remote.answers[index]
                return None
            nested = response.get("question")
            if isinstance(nested, Mapping):
                return question_from_remote(nested)
            if any(
                key in response
                for key in ("answer", "questionText", "question_text")
            ):
                return question_from_remote(response)
        except ValueError as exc:
            logger.warning("Ignoring unusable save response: %s", exc)
        return None

    def _push_event(
        self,
        content: str,
        *,
        question_index: Optional[int] = None,
        suggestions: Optional[List[str]] = None,
    ) -> Message:
        message = event_message(
            content,
            question_index=question_index,
            suggestions=suggestions,
        )
        self.events.append(message)
        return message
