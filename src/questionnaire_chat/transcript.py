"""Chat transcript projection for questionnaire records."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Tuple
from uuid import uuid4

from .models import Questionnaire

Role = Literal["user", "assistant", "system"]

SMART_SUGGESTIONS: Dict[str, Tuple[str, ...]] = {
    "security": (
        "We implement industry-standard security measures including...",
        "Our security framework follows ISO 27001 guidelines...",
        "We conduct regular security audits and assessments...",
        "Our incident response plan includes immediate containment...",
    ),
    "data": (
        "We ensure data protection through encryption at rest and in transit...",
        "Our data retention policy complies with GDPR requirements...",
        "We implement data minimization principles...",
        "Access to personal data is restricted based on need-to-know...",
    ),
    "access": (
        "We implement role-based access control (RBAC)...",
        "Multi-factor authentication is required for all administrative access...",
        "We conduct quarterly access reviews...",
        "Privileged accounts are monitored continuously...",
    ),
    "compliance": (
        "We maintain compliance with SOC 2 Type II, GDPR, and ISO 27001...",
        "Our compliance program includes regular internal audits...",
        "We have a dedicated compliance officer who oversees...",
        "Documentation is maintained for all compliance activities...",
    ),
    "backup": (
        "We maintain automated daily backups with offsite storage...",
        "Our RTO is 4 hours and RPO is 1 hour for critical systems...",
        "Backup testing is performed quarterly...",
        "We have documented disaster recovery procedures...",
    ),
}

# Evaluated in order; the first matching keyword set wins.
SUGGESTION_RULES: Tuple[Tuple[Tuple[str, ...], str], ...] = (
    (("security", "encrypt"), "security"),
    (("data", "privacy"), "data"),
    (("access", "authentication"), "access"),
    (("compliance", "audit"), "compliance"),
    (("backup", "recovery"), "backup"),
)

WELCOME_SUGGESTIONS: Tuple[str, ...] = (
    "Generate AI answers for all questions",
    "Show me compliance best practices",
    "Help me understand what's required",
    "Review my completed answers",
)

QUESTION_SUGGESTION_LIMIT = 3
PLACEHOLDER_SUGGESTION_LIMIT = 2


def _empty_suggestions() -> List[str]:
    return []


@dataclass(slots=True)
class Message:
    """A single chat bubble."""

    id: str
    role: Role
    content: str
    question_index: Optional[int] = None
    category: Optional[str] = None
    suggestions: List[str] = field(default_factory=_empty_suggestions)
    timestamp: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.role,
            "content": self.content,
            "questionIndex": self.question_index,
            "category": self.category,
            "suggestions": list(self.suggestions),
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }


def event_message(
    content: str,
    *,
    question_index: Optional[int] = None,
    suggestions: Optional[List[str]] = None,
    role: Role = "assistant",
) -> Message:
    """Build a one-off message that is appended after the projection."""

    return Message(
        id=uuid4().hex,
        role=role,
        content=content,
        question_index=question_index,
        suggestions=list(suggestions or []),
        timestamp=datetime.now(),
    )


def suggestions_for(question: str) -> List[str]:
    lowered = question.lower()
    for keywords, key in SUGGESTION_RULES:
        if any(keyword in lowered for keyword in keywords):
            return list(SMART_SUGGESTIONS[key])
    return []


def welcome_message(questionnaire: Questionnaire) -> Message:
    content = (
        "Welcome to your compliance questionnaire!\n\n"
        f"**{questionnaire.name}**\n\n"
        f"Progress: {questionnaire.answered_count}/{questionnaire.total_count} "
        f"questions completed ({questionnaire.progress}%)\n"
        f"Due: {questionnaire.due_date or 'not set'}\n\n"
        "I'm here to help you complete your compliance requirements "
        "efficiently. You can edit questions, get AI-generated answers, and "
        "use smart suggestions below."
    )
    return Message(
        id="welcome",
        role="system",
        content=content,
        suggestions=list(WELCOME_SUGGESTIONS),
    )


def project(
    questionnaire: Questionnaire,
    active_category: Optional[str] = None,
) -> List[Message]:
    """Derive the display transcript for ``questionnaire``.

    Message ids depend only on answer positions, so projecting the same
    record twice yields equal lists.
    """

    messages: List[Message] = [welcome_message(questionnaire)]
    for index, item in enumerate(questionnaire.answers):
        category = item.category
        if active_category and category != active_category:
            continue
        suggestions = suggestions_for(item.question)
        messages.append(
            Message(
                id=f"question-{index}",
                role="user",
                content=item.question,
                question_index=index,
                category=category,
                suggestions=suggestions[:QUESTION_SUGGESTION_LIMIT],
            )
        )
        if not item.needs_attention:
            messages.append(
                Message(
                    id=f"answer-{index}",
                    role="assistant",
                    content=item.answer,
                    question_index=index,
                    category=category,
                )
            )
            continue
        messages.append(
            Message(
                id=f"placeholder-{index}",
                role="assistant",
                content=(
                    f"**Answer needed for this {category} question**\n\n"
                    'Click "Generate AI Answer" below or use the smart '
                    "suggestions to get started."
                ),
                question_index=index,
                category=category,
                suggestions=suggestions[:PLACEHOLDER_SUGGESTION_LIMIT],
            )
        )
    return messages
