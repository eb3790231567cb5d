"""Discriminated results for fallible boundary calls.

Raw exceptions never cross the command boundary: `run_command` and
`run_command_async` turn the engine's expected failures into a
`CommandError`, and anything else propagates as a bug.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, TypeVar

from .errors import LmsError, RosterError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Failures a user can act on. Everything else is a programming error.
EXPECTED_ERRORS: tuple[type[BaseException], ...] = (RosterError, LmsError, OSError)


@dataclass(frozen=True)
class CommandError:
    message: str
    detail: str | None = None

    def __str__(self) -> str:
        return self.message if not self.detail else f"{self.message} ({self.detail})"


@dataclass(frozen=True)
class CommandResult(Generic[T]):
    """Either `value` (ok) or `error`."""

    value: T | None = None
    error: CommandError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> CommandResult[T]:
        return cls(value=value)

    @classmethod
    def failure(cls, message: str, detail: str | None = None) -> CommandResult[T]:
        return cls(error=CommandError(message, detail))

    def unwrap(self) -> T:
        if self.error is not None:
            raise RuntimeError(f"unwrap() on failed result: {self.error}")
        return self.value  # type: ignore[return-value]


def _to_error(exc: BaseException) -> CommandResult[Any]:
    logger.warning("Command failed: %s: %s", type(exc).__name__, exc)
    return CommandResult.failure(str(exc), type(exc).__name__)


def run_command(fn: Callable[..., T], *args: Any, **kwargs: Any) -> CommandResult[T]:
    try:
        return CommandResult.success(fn(*args, **kwargs))
    except EXPECTED_ERRORS as e:
        return _to_error(e)


async def run_command_async(fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> CommandResult[T]:
    try:
        return CommandResult.success(await fn(*args, **kwargs))
    except EXPECTED_ERRORS as e:
        return _to_error(e)
