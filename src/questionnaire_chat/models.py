"""Questionnaire records and the pure rules derived from them."""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, TypedDict, cast

FALLBACK_ANSWER = "We couldn't generate an answer—please try again."
GENERATING_PLACEHOLDER = "Generating AI answer..."
REGENERATING_PLACEHOLDER = "Generating new answer..."

# Texts older clients wrote into the cache. Only consulted when a record
# crosses the cache/remote boundary without an explicit answer state.
_LEGACY_PENDING_MARKERS = (
    GENERATING_PLACEHOLDER,
    REGENERATING_PLACEHOLDER,
    "AI answer will be generated",
    "Processing in batch mode...",
)
_LEGACY_FAILURE_ANSWERS = {
    FALLBACK_ANSWER,
    "We apologize, but we couldn't generate a response at this time. "
    "Please contact our compliance team directly for this information.",
}

DEFAULT_CATEGORY = "Default"

CATEGORY_RULES: Tuple[Tuple[Tuple[str, ...], str], ...] = (
    (("security", "encrypt", "incident"), "Security Policy"),
    (("data", "privacy", "gdpr"), "Data Protection"),
    (("access", "authentication", "authorization"), "Access Control"),
    (("compliance", "audit", "regulation"), "Compliance"),
    (("backup", "recovery", "disaster"), "Business Continuity"),
    (("training", "awareness", "education"), "Training"),
)

CATEGORIES: Tuple[str, ...] = tuple(
    category for _, category in CATEGORY_RULES
) + (DEFAULT_CATEGORY,)


class QuestionnaireStatus(str, Enum):
    """Lifecycle status, always derived from progress."""

    NOT_STARTED = "Not Started"
    DRAFT = "Draft"
    IN_PROGRESS = "In Progress"
    IN_REVIEW = "In Review"
    COMPLETED = "Completed"

    @classmethod
    def from_string(
        cls,
        status: Any,
        default: Optional["QuestionnaireStatus"] = None,
    ) -> "QuestionnaireStatus":
        """Accept display values, identifiers, and enum names alike.

        Anything that is not a non-blank string counts as missing.
        """
        if not isinstance(status, str) or not status.strip():
            if default is None:
                raise ValueError("Questionnaire status is required.")
            return default
        normalized = "".join(
            ch for ch in status.strip().lower() if ch.isalnum()
        )
        for candidate in cls:
            if normalized in {
                candidate.value.replace(" ", "").lower(),
                candidate.name.replace("_", "").lower(),
            }:
                return candidate
        if default is not None:
            return default
        raise ValueError(f"Unsupported questionnaire status: {status}")


class AnswerState(str, Enum):
    """Where an answer's text came from."""

    EMPTY = "empty"
    PENDING = "pending"
    ANSWERED = "answered"
    GENERATED = "generated"
    FAILED = "failed"

    @property
    def counts_as_answered(self) -> bool:
        return self in {AnswerState.ANSWERED, AnswerState.GENERATED}


def infer_answer_state(answer: str | None) -> AnswerState:
    """Classify stored text that arrived without an explicit state."""

    text = (answer or "").strip()
    if not text:
        return AnswerState.EMPTY
    if text in _LEGACY_FAILURE_ANSWERS:
        return AnswerState.FAILED
    if any(marker in text for marker in _LEGACY_PENDING_MARKERS):
        return AnswerState.PENDING
    return AnswerState.ANSWERED


def classify_category(question: str) -> str:
    lowered = question.lower()
    for keywords, category in CATEGORY_RULES:
        if any(keyword in lowered for keyword in keywords):
            return category
    return DEFAULT_CATEGORY


@dataclass(slots=True)
class QuestionAnswer:
    """One question/answer pair within a questionnaire."""

    question: str
    answer: str = ""
    is_mandatory: bool = False
    question_id: Optional[str] = None
    state: Optional[AnswerState] = field(default=None, compare=False)
    is_loading: bool = field(default=False, compare=False)
    extras: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.state is None:
            self.state = infer_answer_state(self.answer)

    @property
    def needs_attention(self) -> bool:
        return not self.answer or self.answer.strip() == ""

    @property
    def category(self) -> str:
        return classify_category(self.question)

    @property
    def is_answered(self) -> bool:
        return self.state is not None and self.state.counts_as_answered

    def mark_pending(self, placeholder: str) -> None:
        self.answer = placeholder
        self.state = AnswerState.PENDING
        self.is_loading = True

    def apply_generated(self, text: str) -> None:
        """Store a generator result, recognizing the fallback sentinel."""

        self.answer = text
        if text == FALLBACK_ANSWER or not text.strip():
            self.state = AnswerState.FAILED
        else:
            self.state = AnswerState.GENERATED
        self.is_loading = False

    def apply_manual(self, text: str) -> None:
        self.answer = text
        self.state = AnswerState.ANSWERED if text.strip() else AnswerState.EMPTY
        self.is_loading = False

    def clone(self) -> "QuestionAnswer":
        return replace(self, extras=dict(self.extras))


def _empty_answers() -> List[QuestionAnswer]:
    return []


@dataclass(slots=True)
class Questionnaire:
    """A compliance questionnaire and its ordered answers."""

    id: str
    name: str
    status: QuestionnaireStatus = QuestionnaireStatus.NOT_STARTED
    progress: int = 0
    due_date: str = ""
    answers: List[QuestionAnswer] = field(default_factory=_empty_answers)
    created_at: str = ""
    extras: Dict[str, Any] = field(default_factory=dict)

    @property
    def answered_count(self) -> int:
        return sum(1 for item in self.answers if item.is_answered)

    @property
    def total_count(self) -> int:
        return len(self.answers)

    def refresh_progress(self) -> "Questionnaire":
        """Recompute progress and status from the current answers."""

        self.progress = compute_progress(self.answers)
        self.status = status_for_progress(self.progress)
        return self

    def clone(self) -> "Questionnaire":
        return replace(
            self,
            answers=[item.clone() for item in self.answers],
            extras=dict(self.extras),
        )


def compute_progress(answers: Sequence[QuestionAnswer]) -> int:
    total = len(answers)
    if total == 0:
        return 0
    answered = sum(1 for item in answers if item.is_answered)
    # Half-up rounding; round() would send 12.5 to 12.
    return int(math.floor(100 * answered / total + 0.5))


def status_for_progress(progress: int) -> QuestionnaireStatus:
    if progress >= 100:
        return QuestionnaireStatus.COMPLETED
    if progress >= 75:
        return QuestionnaireStatus.IN_REVIEW
    if progress >= 25:
        return QuestionnaireStatus.IN_PROGRESS
    if progress > 0:
        return QuestionnaireStatus.DRAFT
    return QuestionnaireStatus.NOT_STARTED


def normalize_question(question: str) -> str:
    return question.strip().lower()


def deduplicate_answers(
    answers: Sequence[QuestionAnswer],
) -> Tuple[List[QuestionAnswer], int]:
    """Collapse case-insensitive duplicate questions onto the first one.

    When the first occurrence is blank and a later duplicate carries text,
    the surviving entry adopts that text so no written answer is lost.
    """

    unique: List[QuestionAnswer] = []
    positions: Dict[str, int] = {}
    for item in answers:
        key = normalize_question(item.question)
        if key not in positions:
            positions[key] = len(unique)
            unique.append(item)
            continue
        kept = unique[positions[key]]
        if kept.needs_attention and not item.needs_attention:
            kept.answer = item.answer
            kept.state = item.state
            if kept.question_id is None:
                kept.question_id = item.question_id
    return unique, len(answers) - len(unique)


class RemoteQuestionDTO(TypedDict, total=False):
    id: Any
    questionId: Any
    questionText: str
    answer: Optional[str]
    isRequired: bool


class RemoteQuestionnaireDTO(TypedDict, total=False):
    id: Any
    title: str
    status: str
    progress: int
    questions: List[RemoteQuestionDTO]
    createdAt: str


class CachedAnswer(TypedDict, total=False):
    questionId: str
    question: str
    answer: str
    isMandatory: bool
    needsAttention: bool
    category: str


class CachedQuestionnaire(TypedDict, total=False):
    id: str
    name: str
    status: str
    progress: int
    dueDate: str
    answers: List[CachedAnswer]
    createdAt: str


_CACHED_ANSWER_KEYS = {
    "questionId",
    "question",
    "answer",
    "isMandatory",
    "needsAttention",
    "category",
    "isLoading",
}
_CACHED_QUESTIONNAIRE_KEYS = {
    "id",
    "name",
    "status",
    "progress",
    "dueDate",
    "answers",
    "createdAt",
}


def _first(mapping: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = mapping.get(key)
        if value is not None:
            return value
    return None


def _optional_id(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def question_from_remote(payload: Mapping[str, Any]) -> QuestionAnswer:
    """Map a backend question record (camelCase or snake_case)."""

    question = _first(payload, "questionText", "question_text", "question")
    answer = _first(payload, "answer") or ""
    mandatory = _first(payload, "isRequired", "is_required", "isMandatory")
    return QuestionAnswer(
        question=str(question or ""),
        answer=str(answer),
        is_mandatory=bool(mandatory),
        question_id=_optional_id(
            _first(payload, "id", "questionId", "question_id")
        ),
    )


def unwrap_remote_questionnaire(payload: Any) -> Mapping[str, Any]:
    if isinstance(payload, Mapping) and isinstance(
        payload.get("questionnaire"), Mapping
    ):
        return cast(Mapping[str, Any], payload["questionnaire"])
    if isinstance(payload, Mapping):
        return cast(Mapping[str, Any], payload)
    raise ValueError("Questionnaire payload must be a JSON object.")


def from_remote(
    payload: RemoteQuestionnaireDTO | Mapping[str, Any],
    *,
    due_date: str = "",
) -> Questionnaire:
    """Map a backend questionnaire into the canonical record."""

    data = unwrap_remote_questionnaire(payload)
    questionnaire_id = _optional_id(data.get("id"))
    if questionnaire_id is None:
        raise ValueError("Questionnaire payload is missing an id.")
    raw_questions = _first(data, "questions", "answers") or []
    if not isinstance(raw_questions, list):
        raise ValueError("Questionnaire questions must be a list.")
    answers = [
        question_from_remote(cast(Mapping[str, Any], entry))
        for entry in raw_questions
        if isinstance(entry, Mapping)
    ]
    name = _first(data, "title", "name") or "Untitled Questionnaire"
    questionnaire = Questionnaire(
        id=questionnaire_id,
        name=str(name),
        due_date=str(_first(data, "dueDate", "due_date") or due_date),
        answers=answers,
        created_at=str(_first(data, "createdAt", "created_at") or ""),
    )
    return questionnaire.refresh_progress()


def answer_from_cache_dict(entry: Mapping[str, Any]) -> QuestionAnswer:
    return QuestionAnswer(
        question=str(entry.get("question") or ""),
        answer=str(entry.get("answer") or ""),
        is_mandatory=bool(entry.get("isMandatory", False)),
        question_id=_optional_id(entry.get("questionId")),
        extras={
            key: value
            for key, value in entry.items()
            if key not in _CACHED_ANSWER_KEYS
        },
    )


def from_cache_dict(entry: CachedQuestionnaire | Mapping[str, Any]) -> Questionnaire:
    """Rebuild a record from its cached JSON shape."""

    questionnaire_id = _optional_id(entry.get("id"))
    if questionnaire_id is None:
        raise ValueError("Cached questionnaire is missing an id.")
    raw_answers = entry.get("answers") or []
    if not isinstance(raw_answers, list):
        raise ValueError("Cached answers must be a list.")
    answers = [
        answer_from_cache_dict(cast(Mapping[str, Any], item))
        for item in raw_answers
        if isinstance(item, Mapping)
    ]
    raw_progress = entry.get("progress", 0)
    try:
        progress = int(raw_progress)
    except (TypeError, ValueError, OverflowError):
        progress = compute_progress(answers)
    status = QuestionnaireStatus.from_string(
        entry.get("status"),
        default=status_for_progress(progress),
    )
    return Questionnaire(
        id=questionnaire_id,
        name=str(entry.get("name") or ""),
        status=status,
        progress=progress,
        due_date=str(entry.get("dueDate") or ""),
        answers=answers,
        created_at=str(entry.get("createdAt") or ""),
        extras={
            key: value
            for key, value in entry.items()
            if key not in _CACHED_QUESTIONNAIRE_KEYS
        },
    )


def answer_to_cache_dict(item: QuestionAnswer) -> CachedAnswer:
    # In-flight placeholders are never persisted.
    answer = "" if item.state is AnswerState.PENDING else item.answer
    payload: Dict[str, Any] = dict(item.extras)
    if item.question_id is not None:
        payload["questionId"] = item.question_id
    payload.update(
        {
            "question": item.question,
            "answer": answer,
            "isMandatory": item.is_mandatory,
            "needsAttention": not answer or answer.strip() == "",
            "category": item.category,
        }
    )
    return cast(CachedAnswer, payload)


def to_cache_dict(questionnaire: Questionnaire) -> CachedQuestionnaire:
    payload: Dict[str, Any] = dict(questionnaire.extras)
    payload.update(
        {
            "id": questionnaire.id,
            "name": questionnaire.name,
            "status": questionnaire.status.value,
            "progress": questionnaire.progress,
            "dueDate": questionnaire.due_date,
            "answers": [
                answer_to_cache_dict(item) for item in questionnaire.answers
            ],
            "createdAt": questionnaire.created_at,
        }
    )
    return cast(CachedQuestionnaire, payload)
