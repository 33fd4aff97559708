"""One-way cancellation tokens.

A relay owns a root token and hands each tunnel a child. Cancelling a token
cancels all of its descendants; it never touches the parent.
"""

from __future__ import annotations

import asyncio
import weakref


class CancelToken:
    """Cancellation signal that, once raised, is never reversed."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._children: weakref.WeakSet[CancelToken] = weakref.WeakSet()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        """Raise the signal on this token and every child."""
        if self._event.is_set():
            return
        self._event.set()
        for child in list(self._children):
            child.cancel()

    def child(self) -> CancelToken:
        """Create a token cancelled together with this one."""
        token = CancelToken()
        if self.cancelled:
            token.cancel()
        else:
            self._children.add(token)
        return token

    async def wait(self) -> None:
        await self._event.wait()
