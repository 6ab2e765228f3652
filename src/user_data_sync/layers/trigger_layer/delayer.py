"""
遅延実行 - 保留中の呼び出しを最後の要求で置き換え、期限到来時に一度だけ実行する
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Set

logger = logging.getLogger(__name__)

TaskFactory = Callable[[], Awaitable[Any]]


def compute_trigger_delay(successive_failures: int,
                          base_ms: int = 1000,
                          max_multiplier: int = 60) -> int:
    """トリガー遅延（ミリ秒）: 連続失敗数に応じた指数バックオフ"""
    if successive_failures <= 0:
        return base_ms
    return base_ms * min(2 ** successive_failures, max_multiplier)


class Delayer:
    """タイマー式の呼び出し合流器"""

    def __init__(self, default_delay: float = 0.0):
        self.default_delay = default_delay
        self._task_factory: Optional[TaskFactory] = None
        self._handle: Optional[asyncio.TimerHandle] = None
        self._completion: Optional[asyncio.Future] = None
        self._running: Set[asyncio.Task] = set()

    def trigger(self, task_factory: TaskFactory, delay: Optional[float] = None) -> asyncio.Future:
        """実行を予約（秒単位）。既存の予約は新しいタスクと期限で置き換える"""
        loop = asyncio.get_running_loop()
        self._task_factory = task_factory
        self._cancel_timeout()

        if self._completion is None or self._completion.done():
            self._completion = loop.create_future()

        self._handle = loop.call_later(self.default_delay if delay is None else delay, self._fire)
        return self._completion

    def is_triggered(self) -> bool:
        return self._handle is not None

    def cancel(self) -> None:
        """予約を破棄（実行中のタスクは止めない）"""
        self._cancel_timeout()
        self._task_factory = None
        completion, self._completion = self._completion, None
        if completion is not None and not completion.done():
            completion.cancel()

    def _cancel_timeout(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        task_factory, self._task_factory = self._task_factory, None
        completion, self._completion = self._completion, None
        if task_factory is None:
            return

        task = asyncio.ensure_future(task_factory())
        self._running.add(task)

        def done(finished: asyncio.Task) -> None:
            self._running.discard(finished)
            if completion is None or completion.done():
                if not finished.cancelled() and finished.exception() is not None:
                    logger.error(f"Delayed task failed: {finished.exception()}")
                return
            if finished.cancelled():
                completion.cancel()
            elif finished.exception() is not None:
                completion.set_exception(finished.exception())
            else:
                completion.set_result(finished.result())

        task.add_done_callback(done)
