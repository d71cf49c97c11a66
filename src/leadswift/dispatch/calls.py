"""Bounded calls to external collaborators."""

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def call_with_timeout(
    executor: ThreadPoolExecutor,
    fn: Callable[[], T],
    timeout: float,
    on_timeout: Callable[[str], Exception],
) -> T:
    """
    Run fn on the executor and wait at most `timeout` seconds.
    A timeout raises on_timeout(message); the worker is abandoned, not killed.
    """
    future = executor.submit(fn)
    try:
        return future.result(timeout=timeout)
    except FutureTimeout:
        future.cancel()
        msg = f"timed out after {timeout:g}s"
        logger.warning("External call %s", msg)
        raise on_timeout(msg) from None
