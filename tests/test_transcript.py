from __future__ import annotations

from questionnaire_chat.models import Questionnaire, QuestionAnswer
from questionnaire_chat.transcript import (
    PLACEHOLDER_SUGGESTION_LIMIT,
    QUESTION_SUGGESTION_LIMIT,
    WELCOME_SUGGESTIONS,
    event_message,
    project,
    suggestions_for,
)


def _questionnaire() -> Questionnaire:
    return Questionnaire(
        id="q1",
        name="Vendor Security Review",
        due_date="2026-03-01",
        answers=[
            QuestionAnswer(question="Do you encrypt data at rest?", answer="Yes, AES-256"),
            QuestionAnswer(question="Describe your backup schedule", answer=""),
            QuestionAnswer(question="What is your company name?", answer="Acme"),
        ],
    ).refresh_progress()


def test_projection_ids_follow_answer_positions():
    messages = project(_questionnaire())

    assert [message.id for message in messages] == [
        "welcome",
        "question-0",
        "answer-0",
        "question-1",
        "placeholder-1",
        "question-2",
        "answer-2",
    ]
    assert [message.role for message in messages[1:3]] == ["user", "assistant"]
    assert all(message.timestamp is None for message in messages)


def test_projection_is_idempotent():
    record = _questionnaire()

    assert project(record) == project(record)


def test_welcome_summarizes_progress():
    welcome = project(_questionnaire())[0]

    assert welcome.role == "system"
    assert "**Vendor Security Review**" in welcome.content
    assert "2/3 questions completed (67%)" in welcome.content
    assert welcome.suggestions == list(WELCOME_SUGGESTIONS)


def test_placeholder_names_category_and_limits_suggestions():
    messages = {message.id: message for message in project(_questionnaire())}

    placeholder = messages["placeholder-1"]
    assert "Business Continuity question" in placeholder.content
    assert len(placeholder.suggestions) == PLACEHOLDER_SUGGESTION_LIMIT
    assert len(messages["question-0"].suggestions) == QUESTION_SUGGESTION_LIMIT
    assert messages["question-2"].suggestions == []
    assert messages["answer-0"].category == "Security Policy"


def test_category_filter_keeps_indices():
    messages = project(_questionnaire(), "Business Continuity")

    assert [message.id for message in messages] == [
        "welcome",
        "question-1",
        "placeholder-1",
    ]
    assert messages[1].question_index == 1


def test_suggestion_rules_are_ordered():
    # "data" would match the data rule, but "encrypt" comes first.
    assert suggestions_for("Do you encrypt customer data?")[0].startswith(
        "We implement industry-standard security"
    )
    assert suggestions_for("How do you restore from backup?")[0].startswith(
        "We maintain automated daily backups"
    )
    assert suggestions_for("Company name?") == []


def test_event_messages_are_unique_and_timestamped():
    first = event_message("Saved")
    second = event_message("Saved")

    assert first.id != second.id
    assert first.timestamp is not None
    assert first.to_dict()["type"] == "assistant"
