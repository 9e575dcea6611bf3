from __future__ import annotations

from asyncio import Future, get_running_loop
from collections.abc import Callable


class JoinBarrier:
    """
    Counts outstanding sub-operations of a fan-out and runs its done
    actions once all of them have completed.

    The barrier only fires after it has been both registered with and
    completed at least once, so creating one and attaching actions
    before any work is registered never fires it early.
    """

    def __init__(self, on_done: Callable[[], None] | None = None) -> None:
        self._pending = 0
        self._registered = 0
        self._completed = 0
        self._fired = False
        self._actions: list[Callable[[], None]] = []
        if on_done:
            self._actions.append(on_done)

    @property
    def pending(self) -> int:
        return self._pending

    @property
    def registered(self) -> int:
        return self._registered

    @property
    def done(self) -> bool:
        return self._fired

    def register(self, count: int = 1) -> None:
        if self._fired:
            raise RuntimeError("Cannot register with a barrier that has already fired")
        self._pending += count
        self._registered += count

    def complete(self) -> None:
        if self._pending == 0:
            raise RuntimeError("Barrier completed more times than it was registered")
        self._pending -= 1
        self._completed += 1
        if self._pending == 0 and self._registered and self._completed:
            self._fire()

    def on_done(self, action: Callable[[], None]) -> None:
        if self._fired:
            action()
        else:
            self._actions.append(action)

    def wait(self) -> Future[None]:
        """
        A future that resolves when the barrier fires
        """
        future: Future[None] = get_running_loop().create_future()

        def resolve() -> None:
            if not future.done():
                future.set_result(None)

        self.on_done(resolve)
        return future

    def _fire(self) -> None:
        self._fired = True
        actions, self._actions = self._actions, []
        for action in actions:
            action()
