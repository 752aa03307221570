"""Thin async wrappers around the compliance backend REST endpoints.

This module centralizes the HTTP integration so the rest of the package can
stay transport-agnostic. :class:`QuestionnaireBackend` raises
:class:`BackendError` for every failure mode, leaving the recovery policy to
its callers, while :class:`AnswerGenerator` never raises at all and resolves
failures to :data:`~questionnaire_chat.models.FALLBACK_ANSWER`.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import quote

import httpx

from .config import BackendSettings
from .models import FALLBACK_ANSWER

logger = logging.getLogger(__name__)

DEFAULT_ANSWER_CONTEXT = (
    "This is a compliance questionnaire question that needs a professional "
    "response."
)


class BackendError(RuntimeError):
    """Raised when a backend call fails or returns an unusable payload."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def create_http_client(
    settings: BackendSettings,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.AsyncClient:
    """Build the shared ``httpx`` client used by both wrappers."""

    return httpx.AsyncClient(
        base_url=settings.base_url,
        timeout=httpx.Timeout(settings.request_timeout),
        headers={"Accept": "application/json"},
        transport=transport,
    )


def _questionnaire_path(questionnaire_id: str) -> str:
    return f"/api/questionnaires/{quote(questionnaire_id, safe='')}"


class QuestionnaireBackend:
    """Wrapper that dispatches questionnaire CRUD calls to the backend."""

    def __init__(
        self,
        settings: BackendSettings,
        *,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._settings = settings
        self._owns_client = client is None
        self._client = client or create_http_client(settings)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "QuestionnaireBackend":
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.aclose()

    async def fetch_questionnaire(self, questionnaire_id: str) -> Dict[str, Any]:
        payload = await self._request("GET", _questionnaire_path(questionnaire_id))
        if not isinstance(payload, dict):
            raise BackendError(
                f"Questionnaire {questionnaire_id} payload is not an object."
            )
        return payload

    async def list_questionnaires(self) -> List[Dict[str, Any]]:
        payload = await self._request("GET", "/api/questionnaires")
        if isinstance(payload, dict):
            payload = payload.get("questionnaires", [])
        if not isinstance(payload, list):
            raise BackendError("Questionnaire listing is not a list.")
        return [entry for entry in payload if isinstance(entry, dict)]

    async def update_question(
        self,
        questionnaire_id: str,
        question_id: str,
        *,
        answer: Optional[str] = None,
        question_text: Optional[str] = None,
    ) -> Any:
        """PUT a partial question update and return the decoded response.

        A successful response without a body (e.g. ``204 No Content``) yields
        ``None``.
        """

        body: Dict[str, str] = {}
        if question_text is not None:
            body["questionText"] = question_text
        if answer is not None:
            body["answer"] = answer
        if not body:
            raise ValueError("update_question requires answer or question_text")
        path = (
            f"{_questionnaire_path(questionnaire_id)}/questions/"
            f"{quote(question_id, safe='')}"
        )
        return await self._request("PUT", path, json=body, allow_empty=True)

    async def delete_questionnaire(self, questionnaire_id: str) -> None:
        await self._request(
            "DELETE",
            _questionnaire_path(questionnaire_id),
            allow_empty=True,
        )

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Mapping[str, Any]] = None,
        allow_empty: bool = False,
    ) -> Any:
        try:
            response = await self._client.request(method, path, json=json)
        except httpx.HTTPError as exc:
            raise BackendError(f"{method} {path} failed: {exc}") from exc
        if not response.is_success:
            raise BackendError(
                f"{method} {path} returned HTTP {response.status_code}",
                status_code=response.status_code,
            )
        if not response.content:
            if allow_empty:
                return None
            raise BackendError(
                f"{method} {path} returned an empty body",
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError as exc:
            raise BackendError(
                f"{method} {path} returned malformed JSON",
                status_code=response.status_code,
            ) from exc


class AnswerGenerator:
    """Calls the ``/ask`` endpoint; every failure becomes the fallback text."""

    def __init__(
        self,
        settings: BackendSettings,
        *,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._settings = settings
        self._owns_client = client is None
        self._client = client or create_http_client(settings)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def generate(
        self,
        question: str,
        *,
        context: str = DEFAULT_ANSWER_CONTEXT,
    ) -> str:
        try:
            return await asyncio.wait_for(
                self._ask(question, context),
                timeout=self._settings.generation_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Answer generation timed out after %ss",
                self._settings.generation_timeout,
            )
        except httpx.HTTPError as exc:
            logger.warning("Answer generation request failed: %s", exc)
        except ValueError as exc:
            logger.warning("Answer generation returned malformed JSON: %s", exc)
        return FALLBACK_ANSWER

    async def _ask(self, question: str, context: str) -> str:
        response = await self._client.post(
            self._settings.ask_url,
            json={"question": question, "context": context},
            headers={"Content-Type": "application/json"},
        )
        if not response.is_success:
            logger.warning(
                "Answer generation returned HTTP %s", response.status_code
            )
            return FALLBACK_ANSWER
        payload = response.json()
        if not isinstance(payload, dict):
            logger.warning("Answer generation payload is not an object.")
            return FALLBACK_ANSWER
        answer = payload.get("answer")
        if not isinstance(answer, str) or not answer.strip():
            return FALLBACK_ANSWER
        return answer
