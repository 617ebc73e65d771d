"""Per-conversation abort tokens.

A token is created when an exchange begins and removed when the exchange
(including any error-fix follow-up) completes or aborts. Aborting is
idempotent and only ever flips the flag; consumers check the token at
their own suspension points.
"""

from __future__ import annotations

import asyncio
import logging

logger = logging.getLogger(__name__)


class AbortToken:
    """Abort flag plus awaitable signal for one exchange."""

    def __init__(self, conversation_id: str) -> None:
        self.conversation_id = conversation_id
        self._event = asyncio.Event()

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    def abort(self) -> None:
        if not self._event.is_set():
            self._event.set()
            logger.info("Exchange aborted for conversation %s", self.conversation_id)

    async def wait(self) -> None:
        """Block until the token is aborted."""
        await self._event.wait()

    async def sleep(self, seconds: float) -> bool:
        """Sleep for up to `seconds`. Returns True if aborted meanwhile."""
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True


class CancellationRegistry:
    """Tracks the active AbortToken of each conversation."""

    def __init__(self) -> None:
        self._tokens: dict[str, AbortToken] = {}

    def begin(self, conversation_id: str) -> AbortToken:
        """Create the token for a new exchange, aborting any stale one."""
        stale = self._tokens.get(conversation_id)
        if stale is not None:
            logger.warning("Replacing active exchange for conversation %s", conversation_id)
            stale.abort()
        token = AbortToken(conversation_id)
        self._tokens[conversation_id] = token
        return token

    def get(self, conversation_id: str) -> AbortToken | None:
        return self._tokens.get(conversation_id)

    def abort(self, conversation_id: str) -> bool:
        """Abort the active exchange. Returns False if nothing is running."""
        token = self._tokens.get(conversation_id)
        if token is None:
            return False
        token.abort()
        return True

    def is_aborted(self, conversation_id: str) -> bool:
        token = self._tokens.get(conversation_id)
        return token is not None and token.aborted

    def finish(self, conversation_id: str, token: AbortToken) -> None:
        """Drop the token, unless a newer exchange already replaced it."""
        if self._tokens.get(conversation_id) is token:
            del self._tokens[conversation_id]

    @property
    def active(self) -> int:
        return len(self._tokens)
