"""Cancellation tokens for in-flight Salesforce calls."""

import asyncio

from sync_errors import AbortError


class CancelToken:
    """One-shot cancellation flag shared between a caller and the calls it started."""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason = None

    @property
    def cancelled(self):
        return self._event.is_set()

    def cancel(self, reason="Request was cancelled"):
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self):
        if self.cancelled:
            raise AbortError(self.reason)

    async def wait(self):
        await self._event.wait()


class CancelScope:
    """Hands out a fresh token per operation and cancels the one it replaces.

    Used when a newer input (a different object, new credentials) makes the
    previous call's result stale.
    """

    def __init__(self):
        self._current = None

    @property
    def current(self):
        return self._current

    def renew(self, reason="Superseded by a newer request"):
        if self._current is not None:
            self._current.cancel(reason)
        self._current = CancelToken()
        return self._current

    def cancel(self, reason="Request was cancelled"):
        if self._current is not None:
            self._current.cancel(reason)
        self._current = None
