from __future__ import annotations

import logging
import threading
from typing import Callable, List, Optional

from batchbrake.errors import ConversionCancelledError

logger = logging.getLogger(__name__)


class CancellationSource:
    """Owner side of a cancellation flag.

    A child source is cancelled whenever its parent is; cancelling a child
    leaves the parent and its siblings alone.
    """

    def __init__(self, parent: Optional["CancellationSource"] = None) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []
        self.signal = CancelSignal(self)
        if parent is not None:
            parent.register(self.cancel)

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def child(self) -> "CancellationSource":
        return CancellationSource(parent=self)

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("Cancellation callback failed")

    def register(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Run ``callback`` on cancellation (immediately if already cancelled).

        Returns a function that unregisters the callback.
        """
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)

                def _unregister() -> None:
                    with self._lock:
                        if callback in self._callbacks:
                            self._callbacks.remove(callback)

                return _unregister
        callback()
        return lambda: None

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)


class CancelSignal:
    """Read-only view handed to converters."""

    def __init__(self, source: CancellationSource) -> None:
        self._source = source

    @property
    def cancelled(self) -> bool:
        return self._source.cancelled

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._source.wait(timeout)

    def register(self, callback: Callable[[], None]) -> Callable[[], None]:
        return self._source.register(callback)

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise ConversionCancelledError("Conversion was cancelled")
