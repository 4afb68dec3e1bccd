"""
Per-thread claim and FIFO buffer for serializing conversation processing.
"""

from __future__ import annotations

import threading
from collections import deque
from typing import Any, Deque, Dict, Optional, Set

from relay.logging import get_logger

logger = get_logger(__name__)


class ThreadMessageQueue:
    """
    Guarantees one active processor per conversation thread.

    A dispatcher calls ``try_claim(thread_id)``; on success it processes the
    message and then loops on ``dequeue(thread_id)`` until it returns None,
    which releases the claim atomically. On failure it ``enqueue``s the
    message for the current owner to pick up.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._claimed: Set[str] = set()
        self._pending: Dict[str, Deque[Any]] = {}

    def try_claim(self, key: str) -> bool:
        """Claim ``key`` if nobody holds it; returns whether this call won."""
        with self._lock:
            if key in self._claimed:
                return False
            self._claimed.add(key)
            return True

    def enqueue(self, key: str, payload: Any) -> None:
        """Buffer ``payload`` for ``key`` regardless of claim state."""
        with self._lock:
            self._pending.setdefault(key, deque()).append(payload)
            size = len(self._pending[key])
        logger.debug("Queued message for busy thread %s (%d pending)", key[:8], size)

    def dequeue(self, key: str) -> Optional[Any]:
        """
        Pop the oldest buffered payload for ``key``.

        When nothing is buffered the claim is released and None is returned;
        the caller must stop processing at that point.
        """
        with self._lock:
            pending = self._pending.get(key)
            if pending:
                payload = pending.popleft()
                if not pending:
                    del self._pending[key]
                return payload
            self._pending.pop(key, None)
            self._claimed.discard(key)
            return None

    def release(self, key: str) -> None:
        """Drop the claim and any buffered payloads for ``key``."""
        with self._lock:
            dropped = len(self._pending.pop(key, ()))
            self._claimed.discard(key)
        if dropped:
            logger.debug("Released thread %s, discarded %d pending message(s)", key[:8], dropped)

    def is_claimed(self, key: str) -> bool:
        with self._lock:
            return key in self._claimed

    def pending_count(self, key: str) -> int:
        with self._lock:
            return len(self._pending.get(key, ()))
