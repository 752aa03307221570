"""Load, deduplicate, and auto-complete questionnaires."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional

from .backend_client import AnswerGenerator, BackendError, QuestionnaireBackend
from .cache_store import QuestionnaireCache
from .models import (
    GENERATING_PLACEHOLDER,
    AnswerState,
    Questionnaire,
    QuestionAnswer,
    deduplicate_answers,
    from_remote,
)

logger = logging.getLogger(__name__)

DEFAULT_REDIRECT_SECONDS = 5.0
DEFAULT_LISTING_PATH = "/questionnaires"

UpdateObserver = Callable[[str, Questionnaire], Awaitable[None] | None]
RedirectCallback = Callable[[str], None]


class LoadState(str, Enum):
    """Lifecycle of one questionnaire load."""

    IDLE = "idle"
    LOADING = "loading"
    NOT_FOUND = "not_found"
    READY = "ready"


def _empty_indices() -> List[int]:
    return []


@dataclass(slots=True)
class LoadOutcome:
    """Result of :meth:`QuestionnaireReconciler.load`."""

    state: LoadState
    questionnaire_id: str
    questionnaire: Optional[Questionnaire] = None
    source: Optional[str] = None
    duplicates_removed: int = 0
    generated_indices: List[int] = field(default_factory=_empty_indices)
    redirect_to: Optional[str] = None
    redirect_after: Optional[float] = None
    redirect_handle: Optional[asyncio.TimerHandle] = None

    @property
    def found(self) -> bool:
        return self.state is LoadState.READY and self.questionnaire is not None


class QuestionnaireReconciler:
    """Coordinates the remote-first load and answer back-fill for one id.

    Each call to :meth:`load` starts a new pass. A pass that is superseded by
    a later load, or explicitly abandoned, stops touching the record and the
    cache after its next await.
    """

    def __init__(
        self,
        backend: QuestionnaireBackend,
        generator: AnswerGenerator,
        cache: QuestionnaireCache,
        *,
        redirect_after: float = DEFAULT_REDIRECT_SECONDS,
        listing_path: str = DEFAULT_LISTING_PATH,
    ) -> None:
        self._backend = backend
        self._generator = generator
        self._cache = cache
        self._redirect_after = redirect_after
        self._listing_path = listing_path
        self._passes: Dict[str, int] = {}
        self._states: Dict[str, LoadState] = {}

    def state_for(self, questionnaire_id: str) -> LoadState:
        return self._states.get(questionnaire_id, LoadState.IDLE)

    def is_current(self, questionnaire_id: str, token: int) -> bool:
        return self._passes.get(questionnaire_id) == token

    def current_token(self, questionnaire_id: str) -> int:
        return self._passes.get(questionnaire_id, 0)

    def abandon(self, questionnaire_id: str) -> None:
        """Invalidate in-flight work for ``questionnaire_id``."""

        self._passes[questionnaire_id] = self._passes.get(questionnaire_id, 0) + 1
        self._states[questionnaire_id] = LoadState.IDLE

    async def load(
        self,
        questionnaire_id: str,
        *,
        on_update: Optional[UpdateObserver] = None,
        redirect: Optional[RedirectCallback] = None,
    ) -> LoadOutcome:
        token = self._passes.get(questionnaire_id, 0) + 1
        self._passes[questionnaire_id] = token
        self._states[questionnaire_id] = LoadState.LOADING

        async def _emit(event: str, record: Questionnaire) -> None:
            if on_update is None:
                return
            try:
                outcome = on_update(event, record)
                if asyncio.iscoroutine(outcome):
                    await outcome
            except Exception:  # pragma: no cover - observer errors are logged
                logger.exception("Questionnaire observer failed for event '%s'", event)

        record, source = await self._fetch(questionnaire_id)
        if not self.is_current(questionnaire_id, token):
            logger.debug("Discarding superseded load of %s", questionnaire_id)
            return LoadOutcome(state=LoadState.IDLE, questionnaire_id=questionnaire_id)

        if record is None:
            return self._not_found(questionnaire_id, redirect)

        answers, removed = deduplicate_answers(record.answers)
        record.answers = answers
        record.refresh_progress()
        if removed:
            logger.info(
                "Removed %s duplicate question(s) from %s", removed, questionnaire_id
            )
            self._cache.put(record)
        await _emit("found", record)

        blank = [
            (index, item)
            for index, item in enumerate(record.answers)
            if item.needs_attention
        ]
        generated: List[int] = []
        if blank:
            for _, item in blank:
                item.mark_pending(GENERATING_PLACEHOLDER)
            await _emit("generating", record)

            async def _fill(index: int, item: QuestionAnswer) -> None:
                text = await self._generator.generate(item.question)
                if not self.is_current(questionnaire_id, token):
                    logger.debug(
                        "Discarding stale answer for %s[%s]", questionnaire_id, index
                    )
                    return
                if not self._still_pending(record, index, item):
                    logger.debug(
                        "Answer slot %s[%s] changed during generation; skipping",
                        questionnaire_id,
                        index,
                    )
                    return
                item.apply_generated(text)
                generated.append(index)
                await _emit("answer", record)

            await asyncio.gather(*(_fill(index, item) for index, item in blank))
            if not self.is_current(questionnaire_id, token):
                return LoadOutcome(
                    state=LoadState.IDLE, questionnaire_id=questionnaire_id
                )
            record.refresh_progress()
            self._cache.put(record)

        self._states[questionnaire_id] = LoadState.READY
        await _emit("ready", record)
        return LoadOutcome(
            state=LoadState.READY,
            questionnaire_id=questionnaire_id,
            questionnaire=record,
            source=source,
            duplicates_removed=removed,
            generated_indices=sorted(generated),
        )

    async def _fetch(
        self,
        questionnaire_id: str,
    ) -> tuple[Optional[Questionnaire], Optional[str]]:
        try:
            payload = await self._backend.fetch_questionnaire(questionnaire_id)
            return from_remote(payload), "remote"
        except (BackendError, ValueError) as exc:
            logger.warning(
                "Backend load of %s failed, falling back to cache: %s",
                questionnaire_id,
                exc,
            )
        cached = self._cache.find_by_id(questionnaire_id)
        if cached is None:
            return None, None
        return cached, "cache"

    def _not_found(
        self,
        questionnaire_id: str,
        redirect: Optional[RedirectCallback],
    ) -> LoadOutcome:
        logger.error("Questionnaire %s not found remotely or in cache", questionnaire_id)
        self._states[questionnaire_id] = LoadState.NOT_FOUND
        handle: Optional[asyncio.TimerHandle] = None
        if redirect is not None:
            loop = asyncio.get_running_loop()
            handle = loop.call_later(
                self._redirect_after, redirect, self._listing_path
            )
        return LoadOutcome(
            state=LoadState.NOT_FOUND,
            questionnaire_id=questionnaire_id,
            redirect_to=self._listing_path,
            redirect_after=self._redirect_after,
            redirect_handle=handle,
        )

    @staticmethod
    def _still_pending(
        record: Questionnaire,
        index: int,
        item: QuestionAnswer,
    ) -> bool:
        if index >= len(record.answers) or record.answers[index] is not item:
            return False
        return (
            item.state is AnswerState.PENDING
            and item.answer == GENERATING_PLACEHOLDER
        )
