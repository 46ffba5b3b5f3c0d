"""Connection registry tracking known services, their tokens and clients.

Every spawned (or manually connected) service is known by its url
(``host:port`` or a unix socket path).  The registry keeps the token used to
authenticate against it and lazily builds one client per url, so callers that
``connect`` to the same url twice get the very same client object back.
"""

from __future__ import annotations

import threading
from types import MappingProxyType
from typing import Any, Callable, Generic, Iterator, Mapping, Optional, TypeVar

import structlog

logger = structlog.get_logger(__name__)

ClientT = TypeVar("ClientT")


class ConnectionRegistry(Generic[ClientT]):
    """Thread-safe url → token / url → client bookkeeping.

    Args:
        client_factory: Called as ``client_factory(url, token)`` the first time
            a url is connected to.
    """

    def __init__(self, client_factory: Callable[[str, Optional[str]], ClientT]) -> None:
        self._client_factory = client_factory
        self._tokens: dict[str, Optional[str]] = {}
        self._clients: dict[str, ClientT] = {}
        self._lock = threading.RLock()

    # ── Connections ───────────────────────────────────────────────

    def connect(self, url: str, token: Optional[str] = None) -> ClientT:
        """Return the cached client for *url*, creating it on first use.

        A token only needs to be supplied once; later calls reuse the cached
        one.  An already cached token is never replaced.
        """
        with self._lock:
            if token is None:
                token = self._tokens.get(url)
            if self._tokens.get(url) is None:
                self._tokens[url] = token
            elif token != self._tokens[url]:
                logger.debug("token_ignored", url=url, reason="already_cached")

            client = self._clients.get(url)
            if client is None:
                client = self._client_factory(url, self._tokens[url])
                self._clients[url] = client
            return client

    def register(self, url: str, token: Optional[str]) -> None:
        """Record *token* for *url* unless one is already cached."""
        with self._lock:
            if self._tokens.get(url) is None:
                self._tokens[url] = token

    def each(self, visitor: Callable[[ClientT], Any]) -> None:
        """Call *visitor* with the client of every known url.

        Urls registered while iterating are visited too; urls removed before
        their turn are skipped.
        """
        for client in self.clients():
            visitor(client)

    def clients(self) -> Iterator[ClientT]:
        """Yield the client of every known url, following registrations made mid-iteration."""
        visited: set[str] = set()
        while True:
            with self._lock:
                pending = next((url for url in self._tokens if url not in visited), None)
            if pending is None:
                return
            visited.add(pending)
            yield self.connect(pending)

    # ── Queries ───────────────────────────────────────────────────

    def token_for(self, client_or_url: Any) -> Optional[str]:
        """Cached token for a url string or a client exposing ``.url``."""
        url = client_or_url if isinstance(client_or_url, str) else client_or_url.url
        with self._lock:
            return self._tokens.get(url)

    def list(self) -> Mapping[str, Optional[str]]:
        """Read-only snapshot of url → token."""
        with self._lock:
            return MappingProxyType(dict(self._tokens))

    def urls(self) -> list[str]:
        with self._lock:
            return list(self._tokens)

    def __contains__(self, url: object) -> bool:
        with self._lock:
            return url in self._tokens

    def __len__(self) -> int:
        with self._lock:
            return len(self._tokens)

    # ── Removal ───────────────────────────────────────────────────

    def remove(self, url: str) -> bool:
        """Forget *url* and its client. Returns True if it was known."""
        with self._lock:
            known = url in self._tokens
            self._tokens.pop(url, None)
            self._clients.pop(url, None)
            return known

    def clear(self) -> None:
        with self._lock:
            self._tokens.clear()
            self._clients.clear()
