from __future__ import annotations

import asyncio
import threading
from typing import Any, Callable, Optional, TypeVar

from .errors import CancellationSignal

T = TypeVar("T")


class CancellationToken:
    """Cooperative cancellation flag shared between a caller and a long operation.

    The flag is a ``threading.Event`` so it can be set from a UI thread or a
    signal handler while the operation runs on the event loop. Operations call
    :meth:`raise_if_cancelled` at their checkpoints.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason: Optional[str] = None

    def cancel(self, reason: Optional[str] = None) -> None:
        self._reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancellationSignal(self._reason or "operation cancelled")


def check_cancelled(token: Optional[CancellationToken]) -> None:
    if token is not None:
        token.raise_if_cancelled()


async def run_in_worker(
    func: Callable[..., T],
    *args: Any,
    on_abandon: Optional[Callable[[T], None]] = None,
    **kwargs: Any,
) -> T:
    """Run a blocking call in a worker thread and never abandon it half way.

    If the awaiting task is cancelled, the call is still waited for before the
    cancellation propagates, so locks held by the caller stay held until the
    native work is over. A result produced after cancellation is handed to
    ``on_abandon`` so it can be released.
    """
    worker = asyncio.ensure_future(asyncio.to_thread(func, *args, **kwargs))
    try:
        return await asyncio.shield(worker)
    except asyncio.CancelledError as cancelled:
        while not worker.done():
            try:
                await asyncio.wait({worker})
            except asyncio.CancelledError:
                continue
        if worker.cancelled():
            raise cancelled
        if worker.exception() is None and on_abandon is not None:
            on_abandon(worker.result())
        raise cancelled
