"""
イベント通知 - コールバック登録とスコープ付き登録ハンドル

    emitter = Emitter()
    registration = emitter.subscribe(lambda error: print(error))
    emitter.fire(None)
    registration.dispose()
"""

import logging
from typing import Callable, Generic, List, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Registration:
    """購読の解除ハンドル（dispose は冪等）"""

    def __init__(self, release: Callable[[], None]):
        self._release = release
        self.disposed = False

    def dispose(self) -> None:
        if self.disposed:
            return
        self.disposed = True
        self._release()


class RegistrationGroup:
    """複数ハンドルをまとめて解放する所有者"""

    def __init__(self):
        self._registrations: List[Registration] = []

    def add(self, registration: Registration) -> Registration:
        self._registrations.append(registration)
        return registration

    def dispose(self) -> None:
        registrations, self._registrations = self._registrations, []
        for registration in reversed(registrations):
            registration.dispose()

    def __len__(self) -> int:
        return len(self._registrations)


class Emitter(Generic[T]):
    """単一イベントのエミッター"""

    def __init__(self):
        self._listeners: List[Callable[[T], None]] = []

    def subscribe(self, listener: Callable[[T], None]) -> Registration:
        """リスナー登録"""
        self._listeners.append(listener)

        def release() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return Registration(release)

    def fire(self, value: T) -> None:
        """全リスナーに通知（個々のリスナー例外は他へ波及させない）"""
        for listener in list(self._listeners):
            try:
                listener(value)
            except Exception as e:
                logger.error(f"Event listener failed: {e}")

    @property
    def listener_count(self) -> int:
        return len(self._listeners)
