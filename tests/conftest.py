"""Shared fixtures: settings, an in-memory cache, and a fake backend."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx
import pytest

from questionnaire_chat.backend_client import AnswerGenerator, QuestionnaireBackend
from questionnaire_chat.cache_store import InMemoryCacheStore, QuestionnaireCache
from questionnaire_chat.config import AppSettings, BackendSettings, CacheBackend
from questionnaire_chat.reconciliation import QuestionnaireReconciler

BASE_URL = "http://backend.test"


class FakeBackendServer:
    """Routes httpx requests to in-memory questionnaire state."""

    def __init__(self) -> None:
        self.questionnaires: Dict[str, Dict[str, Any]] = {}
        self.answers: Dict[str, str] = {}
        self.gates: Dict[str, asyncio.Event] = {}
        self.load_status = 200
        self.list_status = 200
        self.put_status = 200
        self.ask_status = 200
        self.delete_status = 204
        self.put_response: Optional[Any] = None
        self.requests: List[httpx.Request] = []

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def requests_for(self, method: str, path_prefix: str = "") -> List[httpx.Request]:
        return [
            request
            for request in self.requests
            if request.method == method and request.url.path.startswith(path_prefix)
        ]

    async def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/ask":
            return await self._ask(request)
        if path == "/api/questionnaires" and request.method == "GET":
            if self.list_status != 200:
                return httpx.Response(self.list_status)
            return httpx.Response(
                200,
                json={"questionnaires": list(self.questionnaires.values())},
            )
        parts = path.strip("/").split("/")
        questionnaire_id = parts[2] if len(parts) > 2 else ""
        if request.method == "GET":
            if self.load_status != 200:
                return httpx.Response(self.load_status)
            payload = self.questionnaires.get(questionnaire_id)
            if payload is None:
                return httpx.Response(404, json={"error": "not found"})
            return httpx.Response(200, json={"questionnaire": payload})
        if request.method == "PUT":
            body = json.loads(request.content)
            if self.put_status == 204:
                return httpx.Response(204)
            if self.put_status != 200:
                return httpx.Response(self.put_status)
            if self.put_response is not None:
                return httpx.Response(200, json=self.put_response)
            return httpx.Response(
                200,
                json={"question": {"id": parts[4], "questionText": body.get("questionText", ""), **body}},
            )
        if request.method == "DELETE":
            self.questionnaires.pop(questionnaire_id, None)
            return httpx.Response(self.delete_status)
        return httpx.Response(405)

    async def _ask(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        question = body["question"]
        gate = self.gates.get(question)
        if gate is not None:
            await gate.wait()
        if self.ask_status != 200:
            return httpx.Response(self.ask_status, text="boom")
        return httpx.Response(
            200,
            json={"answer": self.answers.get(question, f"Generated: {question}")},
        )


def remote_questionnaire(
    questionnaire_id: str = "qn-1",
    questions: Optional[List[Dict[str, Any]]] = None,
) -> Dict[str, Any]:
    return {
        "id": questionnaire_id,
        "title": "Vendor Security Review",
        "status": "Not Started",
        "progress": 0,
        "createdAt": "2026-01-05T10:00:00Z",
        "questions": questions
        if questions is not None
        else [
            {"id": "1", "questionText": "Do you encrypt data at rest?", "answer": "Yes, AES-256", "isRequired": True},
            {"id": "2", "questionText": "Describe your backup schedule", "answer": "", "isRequired": False},
        ],
    }


@pytest.fixture
def backend_settings() -> BackendSettings:
    return BackendSettings(
        base_url=BASE_URL,
        ask_url=f"{BASE_URL}/ask",
        request_timeout=5.0,
        generation_timeout=2.0,
    )


@pytest.fixture
def settings(backend_settings: BackendSettings, tmp_path: Path) -> AppSettings:
    return AppSettings(
        backend=backend_settings,
        cache_backend=CacheBackend.MEMORY,
        cache_path=tmp_path / "user_questionnaires.json",
        redis_url=None,
        not_found_redirect_seconds=5.0,
    )


@pytest.fixture
def server() -> FakeBackendServer:
    return FakeBackendServer()


@pytest.fixture
def store() -> InMemoryCacheStore:
    return InMemoryCacheStore()


@pytest.fixture
def cache(store: InMemoryCacheStore) -> QuestionnaireCache:
    return QuestionnaireCache(store)


@pytest.fixture
def http_client(server: FakeBackendServer) -> httpx.AsyncClient:
    return httpx.AsyncClient(base_url=BASE_URL, transport=server.transport)


@pytest.fixture
def backend(backend_settings: BackendSettings, http_client: httpx.AsyncClient) -> QuestionnaireBackend:
    return QuestionnaireBackend(backend_settings, client=http_client)


@pytest.fixture
def generator(backend_settings: BackendSettings, http_client: httpx.AsyncClient) -> AnswerGenerator:
    return AnswerGenerator(backend_settings, client=http_client)


@pytest.fixture
def reconciler(
    backend: QuestionnaireBackend,
    generator: AnswerGenerator,
    cache: QuestionnaireCache,
) -> QuestionnaireReconciler:
    return QuestionnaireReconciler(backend, generator, cache, redirect_after=0.05)


@pytest.fixture
def make_remote():
    return remote_questionnaire
