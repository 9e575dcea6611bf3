from __future__ import annotations

import dataclasses
import enum
from asyncio import Future, get_running_loop
from collections.abc import Callable
from typing import Any


class CommandKind(enum.Enum):
    GET = "get"
    GETS = "gets"
    SET = "set"
    ADD = "add"
    REPLACE = "replace"
    APPEND = "append"
    PREPEND = "prepend"
    CAS = "cas"
    INCR = "incr"
    DECR = "decr"
    DELETE = "delete"
    STATS = "stats"
    FLUSH_ALL = "flush_all"
    VERSION = "version"


@dataclasses.dataclass(frozen=True)
class Command:
    """
    A single logical operation waiting in (or popped from) the
    :class:`~aemcached.queue.CommandQueue`.

    :attr:`response` is settled exactly once, either with the result of
    the operation (passed through :attr:`shape` if set) or with the
    exception that ended it.
    """

    kind: CommandKind
    keys: tuple[str, ...] = ()
    value: Any = None
    exptime: int = 0
    noreply: bool = False
    delta: int = 1
    cas: int | None = None
    #: Stats group name for ``stats`` or the delay for ``flush_all``
    argument: str | int | None = None
    #: Applied to the codec's result before it is handed to the caller
    shape: Callable[[Any], Any] | None = None
    response: Future[Any] = dataclasses.field(
        default_factory=lambda: get_running_loop().create_future(), compare=False, repr=False
    )

    @property
    def key(self) -> str:
        return self.keys[0]

    def settle(self, result: Any) -> None:
        if self.response.done():
            return
        self.response.set_result(self.shape(result) if self.shape else result)

    def fail(self, error: BaseException) -> None:
        if self.response.done():
            return
        self.response.set_exception(error)
