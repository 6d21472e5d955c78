"""Scraping session lifecycle for one discovery run."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Protocol

from leadfinder.clients.flaresolverr import FlareSolverrClient, FlareSolverrError
from leadfinder.observability.metrics import metrics

logger = logging.getLogger(__name__)


class ListingSource(Protocol):
    """Anything that can turn a listing URL into page markup."""

    async def fetch(self, url: str) -> str | None:
        ...


class SessionManager(ListingSource):
    """Owns at most one remote browser session and guarantees its teardown.

    Session creation failure is not fatal: fetches then run without a session.
    Fetch failures return ``None`` and are logged; nothing is retried here.
    """

    def __init__(self, client: FlareSolverrClient) -> None:
        self._client = client
        self._session_id: str | None = None

    @property
    def session_id(self) -> str | None:
        return self._session_id

    async def create_session(self) -> str | None:
        if self._session_id:
            return self._session_id
        try:
            self._session_id = await self._client.create_session()
        except FlareSolverrError as exc:
            metrics.increment("session.create_failed", tags={"code": exc.code})
            logger.warning("session.create_failed", extra={"code": exc.code, "error": str(exc)})
            return None
        metrics.increment("session.created")
        logger.info("session.created", extra={"session_id": self._session_id})
        return self._session_id

    async def fetch(self, url: str, session: str | None = None) -> str | None:
        session_id = session or self._session_id
        try:
            html = await self._client.request_get(url, session_id=session_id)
        except FlareSolverrError as exc:
            metrics.increment("session.fetch_failed", tags={"code": exc.code})
            logger.warning(
                "session.fetch_failed",
                extra={"url": url, "session_id": session_id, "code": exc.code},
            )
            return None
        logger.debug("session.fetched", extra={"url": url, "bytes": len(html)})
        return html

    async def destroy_session(self, session: str | None = None) -> None:
        session_id = session or self._session_id
        if not session_id:
            return
        if session_id == self._session_id:
            self._session_id = None
        try:
            await self._client.destroy_session(session_id)
        except FlareSolverrError as exc:
            logger.warning(
                "session.destroy_failed",
                extra={"session_id": session_id, "code": exc.code},
            )
            return
        logger.info("session.destroyed", extra={"session_id": session_id})

    @asynccontextmanager
    async def session(self) -> AsyncIterator["SessionManager"]:
        """Open a session for the duration of the block; teardown always runs."""
        await self.create_session()
        try:
            yield self
        finally:
            await self.destroy_session()
