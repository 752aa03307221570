"""Wiring of clients, cache, and sessions shared by the CLI and HTTP app."""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, Optional, Set

import httpx

from .backend_client import AnswerGenerator, QuestionnaireBackend, create_http_client
from .cache_store import CacheStore, QuestionnaireCache, create_cache_store
from .config import AppSettings
from .library import QuestionnaireLibrary
from .reconciliation import (
    LoadOutcome,
    LoadState,
    QuestionnaireReconciler,
    RedirectCallback,
)
from .sessions import QuestionnaireSession

logger = logging.getLogger(__name__)


class QuestionnaireWorkspace:
    """Owns one HTTP client and hands out per-questionnaire sessions."""

    def __init__(
        self,
        settings: AppSettings,
        *,
        store: Optional[CacheStore] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings
        self._http = create_http_client(settings.backend, transport=transport)
        self.backend = QuestionnaireBackend(settings.backend, client=self._http)
        self.generator = AnswerGenerator(settings.backend, client=self._http)
        self.cache = QuestionnaireCache(store or create_cache_store(settings))
        self.reconciler = QuestionnaireReconciler(
            self.backend,
            self.generator,
            self.cache,
            redirect_after=settings.not_found_redirect_seconds,
            listing_path=settings.listing_path,
        )
        self.library = QuestionnaireLibrary(self.backend, self.cache)
        self._sessions: Dict[str, QuestionnaireSession] = {}
        self._loading: Set["asyncio.Task[LoadOutcome]"] = set()

    async def aclose(self) -> None:
        for session in list(self._sessions.values()):
            session.close()
        self._sessions.clear()
        pending = [task for task in self._loading if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._loading.clear()
        await self._http.aclose()

    async def __aenter__(self) -> "QuestionnaireWorkspace":
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.aclose()

    async def open_session(
        self,
        questionnaire_id: str,
        *,
        reload: bool = False,
        wait: bool = True,
        redirect: Optional[RedirectCallback] = None,
    ) -> QuestionnaireSession:
        """Return the live session for ``questionnaire_id``, loading it once.

        Concurrent callers share one load. With ``wait=False`` the call
        returns as soon as the record is found and blank answers keep
        generating in the background. A session stays registered only while
        its load is running or ended ``READY``. A caller whose load was
        superseded by a reload receives the session that replaced it.
        """

        session = self._sessions.get(questionnaire_id)
        if session is None or reload:
            if session is not None:
                self.close_session(questionnaire_id)
            session = self._start_session(questionnaire_id, redirect)
        while True:
            if wait:
                await session.wait_loaded()
            else:
                await session.wait_visible()
            current = self._sessions.get(questionnaire_id)
            if current is None or current is session:
                return session
            session = current

    def close_session(self, questionnaire_id: str) -> None:
        session = self._sessions.pop(questionnaire_id, None)
        if session is not None:
            session.close()

    def _start_session(
        self,
        questionnaire_id: str,
        redirect: Optional[RedirectCallback],
    ) -> QuestionnaireSession:
        session = QuestionnaireSession(
            questionnaire_id,
            backend=self.backend,
            generator=self.generator,
            cache=self.cache,
            reconciler=self.reconciler,
        )
        self._sessions[questionnaire_id] = session
        task = session.start(redirect=redirect)
        self._loading.add(task)
        task.add_done_callback(
            lambda done: self._finish_load(questionnaire_id, session, done)
        )
        return session

    def _finish_load(
        self,
        questionnaire_id: str,
        session: QuestionnaireSession,
        task: "asyncio.Task[LoadOutcome]",
    ) -> None:
        self._loading.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "Background load of %s failed: %s",
                questionnaire_id,
                task.exception(),
            )
        outcome = session.load_outcome
        if outcome is not None and outcome.state is LoadState.READY:
            return
        if self._sessions.get(questionnaire_id) is session:
            logger.debug(
                "Dropping session %s after load ended %s",
                questionnaire_id,
                outcome.state.value if outcome else "early",
            )
            del self._sessions[questionnaire_id]
