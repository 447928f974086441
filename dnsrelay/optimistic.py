"""Background refreshing of expired cache entries."""

from __future__ import annotations

import abc
import logging
import threading
from typing import Any

logger = logging.getLogger(__name__)


class CachingResolver(abc.ABC):
    """A resolver that can also store its responses in a cache."""

    @abc.abstractmethod
    def reply_from_upstream(self, dctx: Any) -> bool:
        """Resolve dctx; return True if the response may be cached.

        Raises an exception if resolving fails.
        """

    @abc.abstractmethod
    def cache_resp(self, dctx: Any) -> None:
        """Store the response from dctx in the cache."""


class OptimisticResolver:
    """Resolves expired cached requests, one at a time per key."""

    def __init__(self, resolver: CachingResolver) -> None:
        self._resolver = resolver
        self._lock = threading.Lock()
        self._pending: set[str] = set()

    def resolve_once(self, dctx: Any, key: bytes) -> None:
        """Resolve dctx unless a request with the same key is already running."""
        key_hex = key.hex()
        with self._lock:
            if key_hex in self._pending:
                return
            self._pending.add(key_hex)

        try:
            try:
                ok = self._resolver.reply_from_upstream(dctx)
            except Exception as err:
                logger.debug("resolving request for optimistic cache: %s", err)
                return
            if ok:
                self._resolver.cache_resp(dctx)
        except Exception:
            logger.exception("optimistic resolver")
        finally:
            with self._lock:
                self._pending.discard(key_hex)