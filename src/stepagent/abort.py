"""
Cooperative cancellation.

An AbortController exclusively owns one AbortSignal; the signal is handed
out read-only to any number of consumers. Nothing in the engine polls the
signal on its own: actions and tools are expected to check
``is_aborted`` at safe points, call ``throw_if_aborted``, or register a
listener that cancels the underlying work.
"""

import logging
import threading
from collections.abc import Callable

from stepagent.errors import AbortError

logger = logging.getLogger(__name__)

AbortListener = Callable[["AbortSignal"], None]


class AbortSignal:
    """Read-only view of an abort state. Created by AbortController."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._event = threading.Event()
        self._reason: AbortError | None = None
        self._listeners: list[AbortListener] = []

    def is_aborted(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> AbortError | None:
        """The reason recorded by the first abort, or None."""
        return self._reason

    def add_listener(self, listener: AbortListener) -> None:
        """
        Register a listener fired once on abort.

        Listeners registered after the signal fired are never called;
        check ``is_aborted`` before registering.
        """
        with self._lock:
            if self._event.is_set():
                return
            self._listeners.append(listener)

    def remove_listener(self, listener: AbortListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def throw_if_aborted(self) -> None:
        if self._event.is_set():
            raise self._reason or AbortError("Aborted")

    def wait(self, timeout: float | None = None) -> bool:
        """Block until aborted or timeout. Returns True if aborted."""
        return self._event.wait(timeout)

    def _abort(self, reason: AbortError) -> bool:
        with self._lock:
            if self._event.is_set():
                return False
            self._reason = reason
            self._event.set()
            listeners = list(self._listeners)
            self._listeners.clear()

        for listener in listeners:
            try:
                listener(self)
            except Exception:
                logger.exception("Abort listener failed")
        return True


class AbortController:
    """Owner of one AbortSignal."""

    def __init__(self) -> None:
        self._signal = AbortSignal()

    @property
    def signal(self) -> AbortSignal:
        return self._signal

    def abort(self, reason: str | BaseException | None = None) -> bool:
        """
        Abort the signal. Only the first call has any effect.

        Returns True if this call performed the abort.
        """
        if isinstance(reason, AbortError):
            error = reason
        elif isinstance(reason, BaseException):
            error = AbortError(str(reason) or type(reason).__name__)
            error.__cause__ = reason
        else:
            error = AbortError(reason or "Aborted")

        fired = self._signal._abort(error)
        if fired:
            logger.info(f"Abort signalled: {error}")
        return fired
