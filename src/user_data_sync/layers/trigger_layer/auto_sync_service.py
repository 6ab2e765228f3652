"""
自動同期サービス
定期同期・アクティビティ起点の同期要求（レート制限・デバウンス・指数バックオフ）・エラー時の復旧を調整する

    service = UserDataAutoSyncService(sync_service, enablement, auth, AutoSyncConfig())
    service.on_error.subscribe(print)
    await service.enable()
    service.trigger_auto_sync(["extensions"])
"""

import asyncio
import time
from typing import Callable, Iterable, List, Optional, Set, Tuple

from ...config.sync_config import AutoSyncConfig
from ...core.errors import ErrorHandler, RecoveryAction, UserDataSyncError, UserDataSyncErrorCode
from ...core.events import Emitter, RegistrationGroup
from ...core.models import ALL_SYNC_RESOURCES
from ...utils.enhanced_logger import get_logger
from ..sync_layer.sync_service import UserDataSyncService
from .delayer import Delayer, compute_trigger_delay
from .enablement import AuthTokenService, UserDataSyncEnablementService

logger = get_logger(__name__)

# リソース単位の有効化で発生するトリガー元
RESOURCE_ENABLEMENT_SOURCE = "resourceEnablement"


class AutoSync:
    """定期同期ループ（前回サイクル完了から interval 後に次を実行）"""

    INTERVAL_SYNCING = "Interval"

    def __init__(self, interval_seconds: float, sync_service: UserDataSyncService):
        self.interval_seconds = interval_seconds
        self.sync_service = sync_service

        self.on_did_start_sync: Emitter[None] = Emitter()
        self.on_did_finish_sync: Emitter[Optional[Exception]] = Emitter()

        self._registrations = RegistrationGroup()
        self._interval_handle: Optional[asyncio.TimerHandle] = None
        self._tasks: Set[asyncio.Task] = set()
        # サイクルは直列に実行
        self._lock = asyncio.Lock()
        self.started = False
        self.disposed = False

    def start(self) -> None:
        self._registrations.add(self.on_did_finish_sync.subscribe(lambda _: self._wait_until_next_interval_and_sync()))
        self.started = True
        logger.info("Auto Sync: Started", operation="auto_sync")
        self._spawn(self.sync(self.INTERVAL_SYNCING))

    def _spawn(self, coroutine) -> asyncio.Task:
        task = asyncio.ensure_future(coroutine)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _wait_until_next_interval_and_sync(self) -> None:
        if self.disposed:
            return
        self._cancel_interval()
        loop = asyncio.get_running_loop()
        self._interval_handle = loop.call_later(
            self.interval_seconds, lambda: self._spawn(self.sync(self.INTERVAL_SYNCING))
        )

    def _cancel_interval(self) -> None:
        if self._interval_handle is not None:
            self._interval_handle.cancel()
            self._interval_handle = None

    async def sync(self, reason: str) -> None:
        """1サイクル実行（例外は送出せず on_did_finish_sync で通知）"""
        async with self._lock:
            if self.disposed:
                return

            logger.info(f"Auto Sync: Triggered by {reason}", operation="auto_sync", reason=reason)
            self.on_did_start_sync.fire(None)

            operation_context = logger.log_operation_start("sync_cycle", reason=reason)
            error: Optional[Exception] = None
            try:
                await self.sync_service.sync()
            except Exception as e:
                error = e

            failure = {}
            if error is not None:
                error_type = error.code.value if isinstance(error, UserDataSyncError) else error.__class__.__name__
                failure = {"error_type": error_type, "error_message": str(error)}
            logger.log_operation_end(operation_context, success=error is None, **failure)
            self.on_did_finish_sync.fire(error)

    async def dispose(self) -> None:
        """停止（進行中のサイクルは完了まで実行される）"""
        if self.disposed:
            return
        self.disposed = True
        self._cancel_interval()
        self._registrations.dispose()
        if self.started:
            await self.sync_service.stop()
            logger.info("Auto Sync: Stopped", operation="auto_sync")


class UserDataAutoSyncService:
    """自動同期の調整役"""

    def __init__(self,
                 sync_service: UserDataSyncService,
                 enablement_service: UserDataSyncEnablementService,
                 auth_token_service: AuthTokenService,
                 config: Optional[AutoSyncConfig] = None,
                 store_configured: bool = True,
                 error_handler: Optional[ErrorHandler] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.sync_service = sync_service
        self.enablement_service = enablement_service
        self.auth_token_service = auth_token_service
        self.config = config or AutoSyncConfig()
        self.error_handler = error_handler or ErrorHandler()
        self.store_configured = store_configured
        self.clock = clock

        self.on_error: Emitter[UserDataSyncError] = Emitter()

        self.auto_sync: Optional[AutoSync] = None
        self.successive_failures = 0
        self.last_sync_trigger_time: Optional[float] = None
        self.sync_trigger_delayer = Delayer()
        self.sources: List[str] = []

        self._registrations = RegistrationGroup()
        self._auto_sync_registrations = RegistrationGroup()
        self._tasks: Set[asyncio.Task] = set()
        self._disposals: Set[asyncio.Task] = set()

        if store_configured:
            self.update_auto_sync()
            self._registrations.add(auth_token_service.on_did_change_token.subscribe(lambda _: self.update_auto_sync()))
            self._registrations.add(
                enablement_service.on_did_change_enablement.subscribe(lambda _: self.update_auto_sync())
            )
            self._registrations.add(
                enablement_service.on_did_change_resource_enablement.subscribe(self._on_resource_enablement)
            )
            self._registrations.add(
                sync_service.on_did_change_local.subscribe(lambda resource: self.trigger_auto_sync([resource]))
            )

    def _spawn(self, coroutine, tasks: Optional[Set[asyncio.Task]] = None) -> asyncio.Task:
        tasks = self._tasks if tasks is None else tasks
        task = asyncio.ensure_future(coroutine)
        tasks.add(task)
        task.add_done_callback(tasks.discard)
        return task

    def _on_resource_enablement(self, change: Tuple[str, bool]) -> None:
        _, enabled = change
        if enabled:
            self.trigger_auto_sync([RESOURCE_ENABLEMENT_SOURCE])

    def is_auto_sync_enabled(self) -> Tuple[bool, Optional[str]]:
        if not self.store_configured:
            return False, "remote store is not configured"
        if not self.enablement_service.is_enabled():
            return False, "sync is disabled"
        if not self.auth_token_service.token:
            return False, "token is not available"
        return True, None

    def update_auto_sync(self) -> None:
        """有効条件（同期有効かつトークンあり）に合わせて定期同期を開始・停止"""
        enabled, reason = self.is_auto_sync_enabled()
        if enabled:
            if self.auto_sync is None:
                auto_sync = AutoSync(self.config.interval_seconds, self.sync_service)
                self._auto_sync_registrations.add(auto_sync.on_did_start_sync.subscribe(self._on_did_start_sync))
                self._auto_sync_registrations.add(auto_sync.on_did_finish_sync.subscribe(
                    lambda error: self._spawn(self._on_did_finish_sync(error))
                ))
                self.auto_sync = auto_sync
                auto_sync.start()
            return

        self.sync_trigger_delayer.cancel()
        self.sources = []
        if self.auto_sync is not None:
            logger.info(f"Auto Sync: Disabled because {reason}", operation="auto_sync")
            auto_sync, self.auto_sync = self.auto_sync, None
            self._auto_sync_registrations.dispose()
            self._spawn(auto_sync.dispose(), self._disposals)

    def _on_did_start_sync(self, _) -> None:
        self.last_sync_trigger_time = self.clock()

    async def _on_did_finish_sync(self, error: Optional[Exception]) -> None:
        if error is None:
            self.successive_failures = 0
            return

        sync_error = self.error_handler.normalize(error)
        action = self.error_handler.resolve(sync_error)

        if action == RecoveryAction.RESET_AND_DISABLE:
            if sync_error.code == UserDataSyncErrorCode.SESSION_EXPIRED:
                logger.info("Auto Sync: Cloud has new session", operation="auto_sync")
            else:
                logger.info("Auto Sync: Sync is turned off in the cloud.", operation="auto_sync")
            await self.sync_service.reset_local()
            await self.disable()
            logger.info("Auto Sync: Did reset the local sync state and turned off sync", operation="auto_sync")
        elif action == RecoveryAction.DISABLE:
            await self.disable()
            logger.info("Auto Sync: Turned off sync because of making too many requests to server",
                        operation="auto_sync")
        else:
            self.successive_failures += 1
            logger.debug(f"Auto Sync: Successive failures: {self.successive_failures}", operation="auto_sync")

        self.on_error.fire(sync_error)

    async def enable(self) -> None:
        await self.enablement_service.set_enablement(True)
        self.update_auto_sync()

    async def disable(self) -> None:
        await self.enablement_service.set_enablement(False)
        self.update_auto_sync()
        if self._disposals:
            await asyncio.gather(*list(self._disposals))

    def trigger_auto_sync(self, sources: Iterable[str]) -> Optional[asyncio.Future]:
        """アクティビティ起点の同期要求（レート制限・デバウンス後に1回実行）"""
        sources = list(sources)
        if self.auto_sync is None:
            self.sync_trigger_delayer.cancel()
            return None

        # リソース変更・有効化起点の要求はレート制限しない
        has_to_limit = (RESOURCE_ENABLEMENT_SOURCE not in sources
                        and not any(source in ALL_SYNC_RESOURCES for source in sources))
        if (has_to_limit and self.last_sync_trigger_time is not None
                and self.clock() - self.last_sync_trigger_time < self.config.rate_limit_seconds):
            logger.debug(f"Auto Sync Skipped: Limited to once per {self.config.rate_limit_seconds} seconds.",
                         operation="auto_sync")
            return None

        self.sources.extend(sources)
        delay_ms = compute_trigger_delay(
            self.successive_failures, self.config.debounce_ms, self.config.max_backoff_multiplier
        )
        return self.sync_trigger_delayer.trigger(self._sync_from_activity, delay_ms / 1000)

    async def _sync_from_activity(self) -> None:
        sources, self.sources = self.sources, []
        logger.log_event("sync/triggered", sources=sources)
        if self.auto_sync is not None:
            await self.auto_sync.sync("Activity")

    async def dispose(self) -> None:
        self._registrations.dispose()
        self.sync_trigger_delayer.cancel()
        self.sources = []
        if self.auto_sync is not None:
            auto_sync, self.auto_sync = self.auto_sync, None
            self._auto_sync_registrations.dispose()
            await auto_sync.dispose()
        if self._disposals:
            await asyncio.gather(*list(self._disposals))
