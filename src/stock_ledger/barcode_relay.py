"""Hand-off point for the most recently scanned barcode.

A scanner posts codes, the front-end polls for the latest one and clears it
once consumed. Only the last value matters, so the default implementation
is a single slot; :class:`BarcodeRelay` is the seam for replacing it with a
real queue.
"""

from __future__ import annotations

import threading
from typing import Optional, Protocol

from . import log


class BarcodeRelay(Protocol):
    """Operations the rest of the package expects from a barcode relay."""

    def get(self) -> Optional[str]:
        ...

    def set(self, barcode: str) -> None:
        ...

    def clear(self, expected: Optional[str] = None) -> Optional[str]:
        ...


class LatestBarcodeSlot:
    """Thread-safe, last-write-wins register holding at most one barcode."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._value: Optional[str] = None

    def get(self) -> Optional[str]:
        with self._lock:
            return self._value

    def set(self, barcode: str) -> None:
        with self._lock:
            self._value = barcode
        log.info("Received barcode: %s", barcode)

    def clear(self, expected: Optional[str] = None) -> Optional[str]:
        """Empty the slot and return what it held.

        ``expected`` is only used for logging; the slot is cleared even when
        it holds a different code.
        """

        with self._lock:
            previous, self._value = self._value, None
        if expected is not None and expected != previous:
            log.warning("Cleared barcode '%s' while '%s' was expected", previous, expected)
        else:
            log.info("Cleared barcode: %s", previous)
        return previous


__all__ = ["BarcodeRelay", "LatestBarcodeSlot"]
