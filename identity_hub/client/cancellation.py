"""Cancellation signals for network-bound steps."""

import threading


class Cancelled(Exception):
    """Raised when work continues after its token was cancelled."""


class CancellationToken:
    """Cooperative cancellation flag shared between a state machine and its calls.

    A state machine creates a fresh token per run and cancels the previous
    one on teardown or restart, so a late response from an abandoned run
    sees ``cancelled`` and is discarded instead of applied.
    """

    def __init__(self):
        self._event = threading.Event()
        self._callbacks = []
        self._lock = threading.Lock()

    @property
    def cancelled(self):
        return self._event.is_set()

    def cancel(self):
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()

    def on_cancel(self, callback):
        """Run ``callback`` on cancellation (immediately if already cancelled)."""
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise Cancelled()

    def wait(self, timeout=None):
        return self._event.wait(timeout)
