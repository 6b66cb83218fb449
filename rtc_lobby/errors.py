"""Tagged error values and the timeout primitive.

Every fallible operation in this package returns either its value or an
`Error`. Exceptions are handled locally and converted before returning.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar, Union


logger = logging.getLogger(__name__)


T = TypeVar("T")


class ErrorKind(str, Enum):
    TIMEOUT = "timeout"
    INVALID_DATA = "invalidData"
    CONNECTION = "connection"
    SERIALIZE = "serialize"
    DESERIALIZE = "deserialize"
    LOBBY_NOT_FOUND = "lobbyNotFound"
    LOBBY_ALREADY_EXISTS = "lobbyAlreadyExists"


@dataclass(frozen=True)
class Error:
    kind: ErrorKind
    message: str

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"


def display_any(data: Any) -> str:
    """Short printable form of `data` for error messages."""

    text = str(data)
    if len(text) < 32:
        return text
    return f"[type: {type(data).__name__}]"


class TimeoutHandle(Generic[T]):
    """A single-assignment result slot raced against a deadline.

    Whoever resolves first wins: either the owner via `resolve()` or the
    deadline, which resolves to a `timeout` error. The deadline timer is
    released as soon as the slot is resolved.
    """

    def __init__(
        self,
        timeout: float,
        message: str,
        on_timeout: Optional[Callable[[], Optional[Awaitable[Any]]]] = None,
    ):
        self._loop = asyncio.get_running_loop()
        self._future: asyncio.Future[Union[T, Error]] = self._loop.create_future()
        self._timeout = timeout
        self._message = message
        self._on_timeout = on_timeout
        self._cleanup: Optional[asyncio.Future[Any]] = None
        self._timer: Optional[asyncio.TimerHandle] = self._loop.call_later(max(0.0, timeout), self._expire)

    @property
    def result(self) -> asyncio.Future[Union[T, Error]]:
        return self._future

    @property
    def done(self) -> bool:
        return self._future.done()

    def resolve(self, value: Union[T, Error]) -> bool:
        if self._future.done():
            return False
        self._future.set_result(value)
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        return True

    def _expire(self) -> None:
        self._timer = None
        if not self.resolve(Error(ErrorKind.TIMEOUT, f"{self._message} (time given: {self._timeout:g}s)")):
            return
        if self._on_timeout is None:
            return
        try:
            outcome = self._on_timeout()
        except Exception:
            logger.exception("timeout side effect failed message=%s", self._message)
            return
        if inspect.isawaitable(outcome):
            self._cleanup = asyncio.ensure_future(outcome)
            self._cleanup.add_done_callback(_log_cleanup_failure)


def _log_cleanup_failure(task: asyncio.Future[Any]) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.debug("timeout cleanup failed: %s", exc)


def create_timeout(
    timeout: float,
    message: str,
    on_timeout: Optional[Callable[[], Optional[Awaitable[Any]]]] = None,
) -> TimeoutHandle[Any]:
    return TimeoutHandle(timeout, message, on_timeout)


async def run_callback(callback: Optional[Callable[..., Any]], *args: Any, label: str = "callback") -> None:
    """Call a user callback, sync or async, and log whatever it raises."""

    if callback is None:
        return
    try:
        outcome = callback(*args)
        if inspect.isawaitable(outcome):
            await outcome
    except Exception:
        logger.exception("%s failed", label)
