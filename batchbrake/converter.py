from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Optional

from batchbrake.cancellation import CancelSignal

ProgressCallback = Callable[[float], None]


@dataclass(frozen=True)
class ConversionResult:
    success: bool
    error: Optional[str] = None
    exit_code: Optional[int] = None

    @classmethod
    def ok(cls, exit_code: Optional[int] = 0) -> "ConversionResult":
        return cls(success=True, exit_code=exit_code)

    @classmethod
    def failed(cls, error: str, exit_code: Optional[int] = None) -> "ConversionResult":
        return cls(success=False, error=error, exit_code=exit_code)


class Converter(ABC):
    """
    Performs a single conversion on behalf of the scheduler.
    """

    @abstractmethod
    def convert(
        self,
        input_path: str,
        output_path: str,
        preset: Optional[str],
        on_progress: ProgressCallback,
        cancel_signal: CancelSignal,
    ) -> ConversionResult:
        """Run one conversion to completion.

        ``on_progress`` receives percentages in (0, 100]. Implementations must
        stop their external process promptly once ``cancel_signal`` fires and
        then raise ``ConversionCancelledError``.
        """

    @abstractmethod
    def is_available(self) -> bool:
        """Return whether conversions can be started at all."""
