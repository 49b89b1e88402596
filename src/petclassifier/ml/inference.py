"""Inference concurrency layer.

Architecture:
    async caller -> asyncio.Semaphore(N) -> ThreadPoolExecutor(N) -> ONNX inference

Work is handed to the executor callback-style (``submit``); ``run`` turns that
completion callback back into an awaitable through a one-shot future that is
settled exactly once, whether the work returns or raises.
"""

from __future__ import annotations

import asyncio
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import Callable

    from petclassifier.config import Settings

T = TypeVar("T")


class InferencePool:
    """Manages the semaphore and thread pool for ML inference."""

    def __init__(self, settings: Settings) -> None:
        self._semaphore = asyncio.Semaphore(settings.max_concurrent)
        self._executor = ThreadPoolExecutor(
            max_workers=settings.max_concurrent,
            thread_name_prefix="onnx-inference",
        )

    def submit(
        self,
        func: Callable[..., T],
        *args: object,
        callback: Callable[[T | None, BaseException | None], None],
    ) -> None:
        """Run ``func(*args)`` on the thread pool and report through ``callback``.

        The callback receives ``(result, None)`` on success or ``(None, error)``
        if the function raised, and is invoked exactly once from the worker thread.
        """

        def _work() -> None:
            try:
                result = func(*args)
            except Exception as exc:  # noqa: BLE001
                callback(None, exc)
                return
            callback(result, None)

        self._executor.submit(_work)

    async def run(self, func: Callable[..., T], *args: object) -> T:
        """Submit a synchronous function to the inference thread pool and await it.

        Waits for a free slot, then bridges the ``submit`` callback into a
        future on the running loop.

        Raises:
            Exception: Whatever ``func`` raised.
        """
        loop = asyncio.get_running_loop()
        future: asyncio.Future[T] = loop.create_future()

        def _settle(result: T | None, error: BaseException | None) -> None:
            if future.done():
                return
            if error is not None:
                future.set_exception(error)
            else:
                future.set_result(result)  # type: ignore[arg-type]

        def _on_complete(result: T | None, error: BaseException | None) -> None:
            loop.call_soon_threadsafe(_settle, result, error)

        async with self._semaphore:
            self.submit(func, *args, callback=_on_complete)
            return await future

    def shutdown(self) -> None:
        """Shut down the thread pool executor."""
        self._executor.shutdown(wait=True)
