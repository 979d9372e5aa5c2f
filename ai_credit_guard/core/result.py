"""
Result type for metering I/O.

Every store or ledger call the engine makes is captured into a ``Result``
instead of raising, and the caller chooses one safe default for the
failure case with ``unwrap_or``. The default path is availability: a
metering outage degrades accuracy, it never blocks chat.
"""

import logging
from dataclasses import dataclass
from typing import Awaitable, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class MeteringError(Exception):
    """An upstream lookup (store, ledger, catalog) failed."""

    def __init__(self, source: str, cause: BaseException):
        super().__init__(f"{source} failed: {cause}")
        self.source = source
        self.cause = cause


@dataclass(frozen=True)
class Result(Generic[T]):
    """Either a value or a MeteringError, never both."""
    value: Optional[T] = None
    error: Optional[MeteringError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        """Return the value, raising the captured error if there is one."""
        if self.error is not None:
            raise self.error
        return self.value

    def unwrap_or(self, default: T) -> T:
        """Return the value, or log the error and return ``default``."""
        if self.error is None:
            return self.value
        logger.error(
            f"Metering degraded to safe default: {self.error}",
            exc_info=self.error.cause,
        )
        return default


async def capture(source: str, awaitable: Awaitable[T]) -> Result[T]:
    """Await ``awaitable`` and wrap its outcome in a Result.

    Only ``Exception`` subclasses are captured; cancellation still
    propagates.

    Args:
        source: Short name of the lookup, used in logs
        awaitable: The I/O operation to run
    """
    try:
        return Result(value=await awaitable)
    except MeteringError as e:
        return Result(error=e)
    except Exception as e:
        return Result(error=MeteringError(source, e))
