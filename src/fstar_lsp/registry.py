from __future__ import annotations

import logging
from collections import Counter
from typing import Awaitable, Callable, Iterator

from fstar_lsp.document_session import DocumentSession

logger = logging.getLogger(__name__)

SessionFactory = Callable[[str, str], Awaitable[DocumentSession]]


class SessionRegistry:
    """Exactly one live `DocumentSession` per open document URI."""

    def __init__(self, factory: SessionFactory) -> None:
        self.factory = factory
        self._sessions: dict[str, DocumentSession] = {}
        # Opens still awaiting the factory, and a per-URI counter of the
        # closes that happened meanwhile.
        self._opening: Counter[str] = Counter()
        self._closes: dict[str, int] = {}

    def __contains__(self, uri: object) -> bool:
        return uri in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._sessions))

    def get(self, uri: str) -> DocumentSession | None:
        return self._sessions.get(uri)

    async def open(self, uri: str, text: str) -> DocumentSession | None:
        """Return the session for `uri`, creating it if needed.

        Returns None when the document was closed while its session was being
        created. That session is disposed instead of registered.
        """
        existing = self._sessions.get(uri)
        if existing is not None:
            return existing
        closes = self._closes.get(uri, 0)
        self._opening[uri] += 1
        try:
            session = await self.factory(uri, text)
            closed = self._closes.get(uri, 0) != closes
        finally:
            self._opening[uri] -= 1
            if self._opening[uri] <= 0:
                del self._opening[uri]
                self._closes.pop(uri, None)
        if closed:
            session.dispose()
            logger.debug("%s was closed while opening; dropped its session", uri)
            return None
        # Another open for the same document may have finished first.
        existing = self._sessions.get(uri)
        if existing is not None:
            session.dispose()
            return existing
        self._sessions[uri] = session
        logger.debug("opened session for %s", uri)
        return session

    def _cancel_opening(self, uri: str) -> None:
        if uri in self._opening:
            self._closes[uri] = self._closes.get(uri, 0) + 1

    def close(self, uri: str) -> bool:
        self._cancel_opening(uri)
        session = self._sessions.pop(uri, None)
        if session is None:
            return False
        session.dispose()
        logger.debug("closed session for %s", uri)
        return True

    async def restart(self, uri: str, text: str) -> DocumentSession | None:
        self.close(uri)
        return await self.open(uri, text)

    def kill_all(self) -> int:
        for uri in list(self._opening):
            self._cancel_opening(uri)
        sessions, self._sessions = list(self._sessions.values()), {}
        for session in sessions:
            session.dispose()
        return len(sessions)

    def set_debug(self, debug: bool) -> None:
        for session in self._sessions.values():
            session.set_debug(debug)
