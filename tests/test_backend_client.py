from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from questionnaire_chat.backend_client import (
    DEFAULT_ANSWER_CONTEXT,
    AnswerGenerator,
    BackendError,
    QuestionnaireBackend,
)
from questionnaire_chat.config import BackendSettings
from questionnaire_chat.models import FALLBACK_ANSWER

from conftest import BASE_URL, FakeBackendServer


def _generator(settings: BackendSettings, handler) -> AnswerGenerator:
    client = httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(handler))
    return AnswerGenerator(settings, client=client)


class TestAnswerGenerator:
    @pytest.mark.asyncio
    async def test_returns_backend_answer(self, generator: AnswerGenerator, server: FakeBackendServer):
        server.answers["Do you encrypt data?"] = "Yes, with AES-256."

        answer = await generator.generate("Do you encrypt data?")

        assert answer == "Yes, with AES-256."
        (request,) = server.requests_for("POST", "/ask")
        assert json.loads(request.content) == {
            "question": "Do you encrypt data?",
            "context": DEFAULT_ANSWER_CONTEXT,
        }

    @pytest.mark.asyncio
    async def test_http_error_status_yields_fallback(
        self, generator: AnswerGenerator, server: FakeBackendServer
    ):
        server.ask_status = 500

        assert await generator.generate("Anything?") == FALLBACK_ANSWER

    @pytest.mark.asyncio
    async def test_network_failure_yields_fallback(self, backend_settings: BackendSettings):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        generator = _generator(backend_settings, handler)

        assert await generator.generate("Anything?") == FALLBACK_ANSWER

    @pytest.mark.asyncio
    async def test_malformed_json_yields_fallback(self, backend_settings: BackendSettings):
        generator = _generator(
            backend_settings,
            lambda request: httpx.Response(200, text="<html>oops</html>"),
        )

        assert await generator.generate("Anything?") == FALLBACK_ANSWER

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", [{"answer": ""}, {"answer": None}, {}, ["Yes"]])
    async def test_missing_answer_yields_fallback(self, backend_settings: BackendSettings, payload):
        generator = _generator(
            backend_settings,
            lambda request: httpx.Response(200, json=payload),
        )

        assert await generator.generate("Anything?") == FALLBACK_ANSWER

    @pytest.mark.asyncio
    async def test_slow_backend_times_out_to_fallback(self, backend_settings: BackendSettings):
        backend_settings.generation_timeout = 0.05

        async def handler(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(1)
            return httpx.Response(200, json={"answer": "too late"})

        generator = _generator(backend_settings, handler)

        assert await generator.generate("Anything?") == FALLBACK_ANSWER


class TestQuestionnaireBackend:
    @pytest.mark.asyncio
    async def test_fetch_returns_wrapped_payload(
        self, backend: QuestionnaireBackend, server: FakeBackendServer, make_remote
    ):
        server.questionnaires["qn-1"] = make_remote()

        payload = await backend.fetch_questionnaire("qn-1")

        assert payload["questionnaire"]["title"] == "Vendor Security Review"

    @pytest.mark.asyncio
    async def test_fetch_missing_raises_with_status(self, backend: QuestionnaireBackend):
        with pytest.raises(BackendError) as excinfo:
            await backend.fetch_questionnaire("missing")

        assert excinfo.value.status_code == 404

    @pytest.mark.asyncio
    async def test_ids_are_url_quoted(self, backend: QuestionnaireBackend, server: FakeBackendServer):
        with pytest.raises(BackendError):
            await backend.fetch_questionnaire("a/b")

        assert server.requests[-1].url.raw_path == b"/api/questionnaires/a%2Fb"

    @pytest.mark.asyncio
    async def test_list_accepts_wrapped_listing(
        self, backend: QuestionnaireBackend, server: FakeBackendServer, make_remote
    ):
        server.questionnaires["qn-1"] = make_remote()
        server.questionnaires["qn-2"] = make_remote("qn-2")

        listing = await backend.list_questionnaires()

        assert [entry["id"] for entry in listing] == ["qn-1", "qn-2"]

    @pytest.mark.asyncio
    async def test_update_question_sends_partial_body(
        self, backend: QuestionnaireBackend, server: FakeBackendServer
    ):
        response = await backend.update_question("qn-1", "2", answer="Nightly")

        (request,) = server.requests_for("PUT")
        assert request.url.path == "/api/questionnaires/qn-1/questions/2"
        assert json.loads(request.content) == {"answer": "Nightly"}
        assert response["question"]["answer"] == "Nightly"

    @pytest.mark.asyncio
    async def test_update_question_accepts_no_content(
        self, backend: QuestionnaireBackend, server: FakeBackendServer
    ):
        server.put_status = 204

        response = await backend.update_question("qn-1", "2", answer="Nightly")

        assert response is None

    @pytest.mark.asyncio
    async def test_update_question_requires_a_field(self, backend: QuestionnaireBackend):
        with pytest.raises(ValueError):
            await backend.update_question("qn-1", "2")

    @pytest.mark.asyncio
    async def test_server_error_raises(self, backend: QuestionnaireBackend, server: FakeBackendServer):
        server.put_status = 503

        with pytest.raises(BackendError) as excinfo:
            await backend.update_question("qn-1", "2", answer="Nightly")

        assert excinfo.value.status_code == 503

    @pytest.mark.asyncio
    async def test_delete_accepts_empty_body(
        self, backend: QuestionnaireBackend, server: FakeBackendServer, make_remote
    ):
        server.questionnaires["qn-1"] = make_remote()

        await backend.delete_questionnaire("qn-1")

        assert "qn-1" not in server.questionnaires

    @pytest.mark.asyncio
    async def test_empty_body_on_read_raises(self, backend_settings: BackendSettings):
        client = httpx.AsyncClient(
            base_url=BASE_URL,
            transport=httpx.MockTransport(lambda request: httpx.Response(200)),
        )
        backend = QuestionnaireBackend(backend_settings, client=client)

        with pytest.raises(BackendError):
            await backend.fetch_questionnaire("qn-1")

    @pytest.mark.asyncio
    async def test_transport_failure_raises(self, backend_settings: BackendSettings):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        client = httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(handler))
        backend = QuestionnaireBackend(backend_settings, client=client)

        with pytest.raises(BackendError) as excinfo:
            await backend.list_questionnaires()

        assert excinfo.value.status_code is None
