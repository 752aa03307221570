"""FastAPI entrypoint that exposes questionnaire sessions over HTTP."""

from __future__ import annotations

import argparse
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .config import AppSettings
from .library import QuestionnaireSummary, SubmissionError
from .models import CATEGORIES, answer_to_cache_dict, to_cache_dict
from .sessions import QuestionnaireSession
from .workspace import QuestionnaireWorkspace

logger = logging.getLogger(__name__)


class QuestionnaireNotFound(Exception):
    """Raised by route helpers when reconciliation ends in NOT_FOUND."""

    def __init__(
        self,
        questionnaire_id: str,
        *,
        redirect_to: Optional[str],
        redirect_after: Optional[float],
    ) -> None:
        super().__init__(questionnaire_id)
        self.questionnaire_id = questionnaire_id
        self.redirect_to = redirect_to
        self.redirect_after = redirect_after


class SubmissionRequest(BaseModel):
    title: str
    questions: str
    vendorId: Optional[str] = None
    vendorName: Optional[str] = None


class AnswerEditRequest(BaseModel):
    answer: str


class QuestionEditRequest(BaseModel):
    question: str


class ChatMessageRequest(BaseModel):
    message: str


def _summary_payload(summary: QuestionnaireSummary) -> Dict[str, object]:
    return {
        "id": summary.id,
        "name": summary.name,
        "status": summary.status.value,
        "progress": summary.progress,
        "dueDate": summary.due_date,
        "questionCount": summary.question_count,
        "source": summary.source,
        "vendorName": summary.vendor_name,
    }


def _session_payload(
    session: QuestionnaireSession,
    category: Optional[str] = None,
) -> Dict[str, Any]:
    record = session.record
    questionnaire: Optional[Dict[str, Any]] = None
    if record is not None:
        questionnaire = dict(to_cache_dict(record))
        answers: List[Dict[str, Any]] = []
        for index, item in enumerate(record.answers):
            entry = dict(answer_to_cache_dict(item))
            entry["answer"] = item.answer
            entry["isLoading"] = item.is_loading
            entry["phase"] = session.phase_for(index).value
            answers.append(entry)
        questionnaire["answers"] = answers
    return {
        "state": session.load_state.value,
        "questionnaire": questionnaire,
        "editingIndex": session.editing_index,
        "messages": [message.to_dict() for message in session.transcript(category)],
    }


def create_app(
    settings: AppSettings,
    *,
    workspace: Optional[QuestionnaireWorkspace] = None,
    allow_origins: Sequence[str] | None = None,
) -> FastAPI:
    """Create a FastAPI app serving the questionnaire chat operations."""

    active = workspace or QuestionnaireWorkspace(settings)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        try:
            yield
        finally:
            await active.aclose()

    app = FastAPI(title="Questionnaire Chat", lifespan=lifespan)

    origins = list(allow_origins) if allow_origins else ["*"]
    allow_credentials = origins != ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=allow_credentials,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(QuestionnaireNotFound)
    async def _not_found(_: Request, exc: QuestionnaireNotFound) -> JSONResponse:
        return JSONResponse(
            status_code=404,
            content={
                "detail": (
                    "We couldn't find a questionnaire with ID "
                    f"{exc.questionnaire_id}."
                ),
                "redirectTo": exc.redirect_to,
                "redirectAfter": exc.redirect_after,
            },
        )

    @app.exception_handler(SubmissionError)
    async def _invalid_submission(_: Request, exc: SubmissionError) -> JSONResponse:
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.exception_handler(IndexError)
    async def _bad_index(_: Request, exc: IndexError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(ValueError)
    async def _bad_value(_: Request, exc: ValueError) -> JSONResponse:
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    async def _session(
        questionnaire_id: str,
        *,
        reload: bool = False,
        wait: bool = False,
    ) -> QuestionnaireSession:
        session = await active.open_session(
            questionnaire_id, reload=reload, wait=wait
        )
        if session.record is None:
            outcome = session.load_outcome
            raise QuestionnaireNotFound(
                questionnaire_id,
                redirect_to=outcome.redirect_to if outcome else settings.listing_path,
                redirect_after=(
                    outcome.redirect_after
                    if outcome
                    else settings.not_found_redirect_seconds
                ),
            )
        return session

    @app.get("/questionnaires")
    async def list_questionnaires() -> Dict[str, object]:
        summaries = await active.library.list()
        return {"questionnaires": [_summary_payload(item) for item in summaries]}

    @app.post("/questionnaires", status_code=201)
    async def create_questionnaire(payload: SubmissionRequest) -> Dict[str, object]:
        record = active.library.create_from_submission(
            payload.title,
            payload.questions,
            vendor_id=payload.vendorId,
            vendor_name=payload.vendorName,
        )
        logger.info("Created questionnaire %s from submission", record.id)
        return {"questionnaire": dict(to_cache_dict(record))}

    @app.get("/questionnaires/{questionnaire_id}/chat")
    async def chat(
        questionnaire_id: str,
        category: Optional[str] = None,
        reload: bool = False,
        wait: bool = False,
    ) -> Dict[str, Any]:
        """Render the chat as soon as the record is found.

        Blank answers show their placeholder until generation finishes;
        pass ``wait=true`` to block until every answer is filled.
        """

        if category is not None and category not in CATEGORIES:
            raise ValueError(f"Unknown category: {category}")
        session = await _session(questionnaire_id, reload=reload, wait=wait)
        return _session_payload(session, category)

    @app.put("/questionnaires/{questionnaire_id}/answers/{index}")
    async def save_answer(
        questionnaire_id: str,
        index: int,
        payload: AnswerEditRequest,
    ) -> Dict[str, Any]:
        session = await _session(questionnaire_id)
        session.begin_edit(index)
        result = await session.save_edit(index, payload.answer)
        body = _session_payload(session)
        body["persistedRemotely"] = bool(result and result.persisted_remotely)
        return body

    @app.post("/questionnaires/{questionnaire_id}/answers/{index}/regenerate")
    async def regenerate_answer(questionnaire_id: str, index: int) -> Dict[str, Any]:
        session = await _session(questionnaire_id)
        result = await session.regenerate(index)
        body = _session_payload(session)
        body["mirrored"] = bool(result and result.mirrored)
        return body

    @app.put("/questionnaires/{questionnaire_id}/questions/{index}")
    async def rename_question(
        questionnaire_id: str,
        index: int,
        payload: QuestionEditRequest,
    ) -> Dict[str, Any]:
        session = await _session(questionnaire_id)
        await session.rename_question(index, payload.question)
        return _session_payload(session)

    @app.post("/questionnaires/{questionnaire_id}/messages")
    async def post_message(
        questionnaire_id: str,
        payload: ChatMessageRequest,
    ) -> Dict[str, object]:
        session = await _session(questionnaire_id)
        replies = session.handle_user_message(payload.message)
        return {"messages": [message.to_dict() for message in replies]}

    @app.delete("/questionnaires/{questionnaire_id}")
    async def delete_questionnaire(questionnaire_id: str) -> Dict[str, object]:
        active.close_session(questionnaire_id)
        removed = await active.library.delete(questionnaire_id)
        return {"id": questionnaire_id, "removedFromCache": removed}

    @app.get("/health")
    async def health() -> dict[str, str]:  # pragma: no cover - simple health check
        return {"status": "ok"}

    return app


def run_api_server(
    settings: AppSettings,
    *,
    host: str = "127.0.0.1",
    port: int = 8090,
    allow_origins: Sequence[str] | None = None,
    log_level: str = "info",
) -> None:
    """Start the questionnaire chat FastAPI server."""

    app = create_app(settings=settings, allow_origins=allow_origins)
    uvicorn.run(app, host=host, port=port, log_level=log_level)


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="python -m questionnaire_chat.api",
        description="Serve questionnaire chat sessions over HTTP.",
    )
    parser.add_argument(
        "--host",
        default="127.0.0.1",
        help="Host interface for the server (default: 127.0.0.1).",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=8090,
        help="Port for the server (default: 8090).",
    )
    parser.add_argument(
        "--allow-origin",
        action="append",
        dest="allow_origin",
        help="Optional CORS origin(s) to allow. Defaults to '*' if not provided.",
    )
    parser.add_argument(
        "--log-level",
        default="info",
        help="Logging level for uvicorn (default: info).",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> None:
    logging.basicConfig(level=logging.INFO)
    args = _parse_args(argv)
    try:
        settings = AppSettings.load()
    except RuntimeError as exc:
        logging.error("Failed to load AppSettings: %s", exc)
        raise SystemExit(1) from exc

    run_api_server(
        settings,
        host=args.host,
        port=args.port,
        allow_origins=args.allow_origin,
        log_level=args.log_level,
    )


if __name__ == "__main__":
    main()
