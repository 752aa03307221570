"""Listing, creation, and deletion of questionnaires."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from .backend_client import BackendError, QuestionnaireBackend
from .cache_store import QuestionnaireCache
from .models import (
    Questionnaire,
    QuestionAnswer,
    QuestionnaireStatus,
    deduplicate_answers,
)

logger = logging.getLogger(__name__)

MISSING_TITLE_MESSAGE = "Please provide a title for the questionnaire."
MISSING_QUESTIONS_MESSAGE = "No questions detected – please add one per line."


class SubmissionError(ValueError):
    """Raised when a questionnaire form submission is invalid."""


@dataclass(slots=True)
class QuestionnaireSummary:
    """Row shown in the questionnaire listing."""

    id: str
    name: str
    status: QuestionnaireStatus
    progress: int
    due_date: str
    question_count: int
    source: str
    vendor_name: Optional[str] = None

    @classmethod
    def from_record(cls, record: Questionnaire, *, source: str) -> "QuestionnaireSummary":
        vendor = record.extras.get("vendorName")
        return cls(
            id=record.id,
            name=record.name,
            status=record.status,
            progress=record.progress,
            due_date=record.due_date,
            question_count=record.total_count,
            source=source,
            vendor_name=str(vendor) if vendor else None,
        )

    @classmethod
    def from_remote(cls, payload: Mapping[str, Any]) -> "QuestionnaireSummary":
        created_at = str(payload.get("createdAt") or "")
        answer_count = payload.get("answerCount") or 0
        try:
            question_count = int(payload.get("questionCount") or 0)
        except (TypeError, ValueError):
            question_count = 0
        vendor = payload.get("vendorName")
        return cls(
            id=str(payload.get("id")),
            name=str(payload.get("title") or "Untitled Questionnaire"),
            status=QuestionnaireStatus.from_string(
                payload.get("status"),
                default=QuestionnaireStatus.NOT_STARTED,
            ),
            progress=100 if answer_count else 0,
            due_date=created_at[:10] if created_at else date.today().isoformat(),
            question_count=question_count,
            source="remote",
            vendor_name=str(vendor) if vendor else None,
        )


def parse_questions(raw_questions: str) -> List[str]:
    """Split a pasted questionnaire into one question per non-blank line."""

    return [line.strip() for line in raw_questions.splitlines() if line.strip()]


class QuestionnaireLibrary:
    """Remote-first questionnaire listing backed by the local cache."""

    def __init__(self, backend: QuestionnaireBackend, cache: QuestionnaireCache) -> None:
        self._backend = backend
        self._cache = cache

    async def list(self) -> List[QuestionnaireSummary]:
        try:
            payload = await self._backend.list_questionnaires()
        except BackendError as exc:
            logger.warning("Backend listing failed, using cache: %s", exc)
            return self._cached_summaries()
        summaries = [
            QuestionnaireSummary.from_remote(entry)
            for entry in payload
            if entry.get("id") is not None
        ]
        if not summaries:
            return self._cached_summaries()
        return summaries

    def create_from_submission(
        self,
        title: str,
        raw_questions: str,
        *,
        vendor_id: Optional[str] = None,
        vendor_name: Optional[str] = None,
    ) -> Questionnaire:
        """Synthesize a client-side questionnaire from the input form."""

        if not raw_questions.strip():
            raise SubmissionError(MISSING_QUESTIONS_MESSAGE)
        if not title.strip():
            raise SubmissionError(MISSING_TITLE_MESSAGE)
        questions = parse_questions(raw_questions)
        if not questions:
            raise SubmissionError(MISSING_QUESTIONS_MESSAGE)

        answers, removed = deduplicate_answers(
            [QuestionAnswer(question=text) for text in questions]
        )
        if removed:
            logger.info("Dropped %s duplicate question(s) from submission", removed)
        extras: Dict[str, Any] = {}
        if vendor_id:
            extras["vendorId"] = vendor_id
        if vendor_name:
            extras["vendorName"] = vendor_name
        questionnaire = Questionnaire(
            id=f"q{int(time.time() * 1000)}",
            name=title.strip(),
            due_date=date.today().isoformat(),
            answers=answers,
            created_at=datetime.now(timezone.utc).isoformat(),
            extras=extras,
        ).refresh_progress()
        if not self._cache.put(questionnaire):
            logger.warning(
                "Questionnaire %s was created but not cached", questionnaire.id
            )
        return questionnaire

    async def delete(self, questionnaire_id: str) -> bool:
        """Delete remotely (best effort) and drop the cached copy."""

        try:
            await self._backend.delete_questionnaire(questionnaire_id)
        except BackendError as exc:
            logger.warning(
                "Backend delete of %s failed; removing cached copy only: %s",
                questionnaire_id,
                exc,
            )
        return self._cache.remove(questionnaire_id)

    def _cached_summaries(self) -> List[QuestionnaireSummary]:
        return [
            QuestionnaireSummary.from_record(record, source="cache")
            for record in self._cache.load_all()
        ]
