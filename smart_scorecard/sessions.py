"""Server-side launch state, keyed by the browser's session cookie."""

from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from . import config

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LaunchContext:
    issuer_url: Optional[str]
    client_id: Optional[str]
    authorize_url: str
    token_url: str
    requested_scopes: Optional[str]
    anti_forgery_state: str


class SessionStore:
    """In-memory store of pending launches.

    A launch is created at ``/launch`` and consumed exactly once at ``/app``.
    A second launch from the same browser overwrites the first. Launches
    that are never consumed expire after ``ttl`` seconds; expired entries are
    evicted whenever a new launch is stored.
    """

    def __init__(self, ttl: float = config.SESSION_TTL, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl = ttl
        self._clock = clock
        self._contexts: Dict[str, Tuple[float, LaunchContext]] = {}
        self._lock = threading.Lock()

    @staticmethod
    def new_session_id() -> str:
        return str(uuid.uuid4())

    def _expired(self, created: float, now: float) -> bool:
        return now - created >= self.ttl

    def _evict_expired(self, now: float) -> None:
        stale = [sid for sid, (created, _) in self._contexts.items() if self._expired(created, now)]
        for sid in stale:
            del self._contexts[sid]
        if stale:
            logger.info(f"Evicted {len(stale)} expired launch(es)")

    def create(self, session_id: str, context: LaunchContext) -> None:
        now = self._clock()
        with self._lock:
            self._evict_expired(now)
            if session_id in self._contexts:
                logger.info(f"Replacing pending launch for session {session_id}")
            self._contexts[session_id] = (now, context)

    def discard(self, session_id: Optional[str]) -> None:
        if not session_id:
            return
        with self._lock:
            self._contexts.pop(session_id, None)

    def consume(self, session_id: Optional[str]) -> Optional[LaunchContext]:
        """Remove and return the pending launch, or None if there is none or it expired."""
        if not session_id:
            return None
        with self._lock:
            entry = self._contexts.pop(session_id, None)
        if entry is None:
            return None
        created, context = entry
        if self._expired(created, self._clock()):
            logger.warning(f"Pending launch for session {session_id} has expired")
            return None
        return context

    def __len__(self) -> int:
        return len(self._contexts)
