"""Cooperative cancellation for processing runs."""

import asyncio
from typing import Callable, List, Optional

from .exceptions import AbortError


class AbortSignal:
    """
    Read side of an abort controller.

    Shared by reference through the whole call chain. Code checks
    ``aborted`` at its checkpoints, awaits ``wait()`` to react as soon as
    it fires, or registers a listener (used to kill encoder processes).
    """

    def __init__(self):
        self._aborted = False
        self._reason: Optional[str] = None
        self._event: Optional[asyncio.Event] = None
        self._listeners: List[Callable[[Optional[str]], None]] = []

    @property
    def aborted(self) -> bool:
        return self._aborted

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def add_listener(self, callback: Callable[[Optional[str]], None]) -> Callable[[], None]:
        """
        Register a callback run once when the signal fires.
        Runs immediately if the signal already fired.
        Returns a function that removes the listener.
        """
        if self._aborted:
            callback(self._reason)
            return lambda: None
        self._listeners.append(callback)

        def remove() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return remove

    async def wait(self) -> Optional[str]:
        """Block until the signal fires; returns the reason."""
        if self._aborted:
            return self._reason
        if self._event is None:
            self._event = asyncio.Event()
        await self._event.wait()
        return self._reason

    def throw_if_aborted(self, message: str = "Processing aborted") -> None:
        if self._aborted:
            raise AbortError(message, reason=self._reason)

    def _fire(self, reason: Optional[str]) -> None:
        if self._aborted:
            return
        self._aborted = True
        self._reason = reason
        if self._event is not None:
            self._event.set()
        listeners, self._listeners = self._listeners, []
        for listener in listeners:
            listener(reason)


class AbortController:
    """Owns an AbortSignal and decides when it fires."""

    def __init__(self):
        self.signal = AbortSignal()
        self._timer: Optional[asyncio.TimerHandle] = None

    def abort(self, reason: Optional[str] = "aborted") -> None:
        self._cancel_timer()
        self.signal._fire(reason)

    @property
    def aborted(self) -> bool:
        return self.signal.aborted

    def abort_after(self, seconds: float) -> None:
        """Fire the signal after a wall-clock timeout. Needs a running loop."""
        self._cancel_timer()
        if seconds and seconds > 0:
            loop = asyncio.get_running_loop()
            self._timer = loop.call_later(seconds, self.abort, f"timed out after {seconds}s")

    def follow(self, parent: Optional[AbortSignal]) -> "AbortController":
        """Fire whenever parent fires."""
        if parent is not None:
            parent.add_listener(self.abort)
        return self

    @classmethod
    def timeout(cls, seconds: float, parent: Optional[AbortSignal] = None) -> "AbortController":
        """Controller that fires after ``seconds`` or when ``parent`` fires."""
        controller = cls().follow(parent)
        controller.abort_after(seconds)
        return controller

    def dispose(self) -> None:
        self._cancel_timer()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
