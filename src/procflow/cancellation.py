"""Shared cancellation token.

One token is passed by reference to every stage of a pipeline. Stages
subscribe to it; firing it notifies every subscriber exactly once.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

import anyio

__all__ = ["CancellationToken", "CancelCallback"]

logger = logging.getLogger(__name__)

CancelCallback = Callable[[object], None]


class CancellationToken:
    """Idempotent abort signal with subscribe/notify.

    Example:
        token = CancellationToken()
        unsubscribe = token.subscribe(lambda reason: print("aborted:", reason))

        token.abort("user request")  # notifies, returns True
        token.abort("again")         # no-op, returns False
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._reason: object = None
        self._callbacks: list[CancelCallback] = []
        self._scopes: list[anyio.CancelScope] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> object:
        return self._reason

    def subscribe(self, callback: CancelCallback) -> Callable[[], None]:
        """Register a callback fired on abort.

        A callback subscribed after the token fired is invoked immediately.

        Returns:
            A function removing the subscription
        """
        if self._cancelled:
            self._invoke(callback)
            return lambda: None

        self._callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unsubscribe

    def abort(self, reason: object = None) -> bool:
        """Fire the token.

        Returns:
            True if this call fired the token, False if it was already fired
        """
        if self._cancelled:
            logger.debug(f"Token already cancelled, ignoring abort({reason!r})")
            return False

        self._cancelled = True
        self._reason = reason
        callbacks, self._callbacks = self._callbacks, []
        logger.debug(f"Token cancelled: reason={reason!r}, subscribers={len(callbacks)}")

        for callback in callbacks:
            self._invoke(callback)
        for scope in self._scopes:
            scope.cancel()
        self._scopes.clear()
        return True

    def _invoke(self, callback: CancelCallback) -> None:
        try:
            callback(self._reason)
        except Exception as e:
            logger.warning(f"Error in cancellation callback: {e}")

    def link(self, other: CancellationToken) -> Callable[[], None]:
        """Fire other whenever this token fires."""
        if other is self:
            return lambda: None
        return self.subscribe(other.abort)

    def cancel_scope(self) -> anyio.CancelScope:
        """Create an anyio cancel scope that is cancelled when the token fires."""
        scope = anyio.CancelScope()
        if self._cancelled:
            scope.cancel()
        else:
            self._scopes.append(scope)
        return scope

    def release_scope(self, scope: anyio.CancelScope) -> None:
        """Stop tracking a scope returned by cancel_scope()."""
        if scope in self._scopes:
            self._scopes.remove(scope)

    async def wait(self) -> object:
        """Wait until the token fires and return the reason."""
        if self._cancelled:
            return self._reason
        future = asyncio.get_running_loop().create_future()

        def _done(reason: object) -> None:
            if not future.done():
                future.set_result(reason)

        unsubscribe = self.subscribe(_done)
        try:
            return await future
        finally:
            unsubscribe()

    def __repr__(self) -> str:
        if self._cancelled:
            return f"CancellationToken(cancelled, reason={self._reason!r})"
        return f"CancellationToken(active, subscribers={len(self._callbacks)})"
