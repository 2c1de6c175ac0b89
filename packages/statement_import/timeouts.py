"""Wall-clock guards for calls into untrusted backends.

Each guarded call runs on a short-lived daemon worker thread and the caller
waits at most ``seconds``. On expiry the caller gets a
:class:`StageTimeoutError` right away; the abandoned call keeps running until
its own backend timeout fires, which is why backends also receive native
timeouts (pytesseract ``timeout=``, OpenAI ``timeout=``).
"""

from __future__ import annotations

import time
from collections.abc import Callable
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeout
from threading import Thread
from typing import TypeVar

from .errors import StageTimeoutError
from .logging_setup import get_logger

_logger = get_logger("statement_import.timeouts")

T = TypeVar("T")


def run_with_timeout(
    fn: Callable[[], T],
    *,
    seconds: float,
    stage: str,
    message: str | None = None,
) -> T:
    """Run ``fn()`` and return its result, or raise ``StageTimeoutError``.

    Exceptions raised by ``fn`` propagate unchanged.
    """

    future: Future[T] = Future()

    def _target() -> None:
        if not future.set_running_or_notify_cancel():
            return
        try:
            future.set_result(fn())
        except BaseException as exc:  # noqa: BLE001 - handed to the waiting caller
            future.set_exception(exc)

    t0 = time.perf_counter()
    Thread(target=_target, name=f"statement-import-{stage}", daemon=True).start()
    try:
        return future.result(timeout=seconds)
    except FutureTimeout:
        _logger.warning(
            "timeouts:expired stage=%s budget_s=%.1f waited_ms=%.2f",
            stage,
            seconds,
            (time.perf_counter() - t0) * 1000.0,
        )
        raise StageTimeoutError(stage, seconds, message) from None


__all__ = ["run_with_timeout"]
