"""
自動同期サービス 統合テスト
有効化ライフサイクル・レート制限・バックオフ・終端エラーからの復旧
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from user_data_sync.config.sync_config import AutoSyncConfig
from user_data_sync.core.errors import UserDataSyncError, UserDataSyncErrorCode
from user_data_sync.core.events import Emitter
from user_data_sync.layers.storage_layer.sync_storage import SyncStorage
from user_data_sync.layers.trigger_layer.auto_sync_service import RESOURCE_ENABLEMENT_SOURCE, UserDataAutoSyncService
from user_data_sync.layers.trigger_layer.enablement import AuthTokenService, UserDataSyncEnablementService
from user_data_sync.utils.enhanced_logger import get_logger


class FakeSyncService:
    """テスト用同期サービス"""

    def __init__(self):
        self.on_did_change_local = Emitter()
        self.sync = AsyncMock(return_value=[])
        self.stop = AsyncMock()
        self.reset_local = AsyncMock()


class FakeClock:
    def __init__(self, now: float = 100.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


async def settle(seconds: float = 0.05):
    await asyncio.sleep(seconds)


@pytest.fixture
async def enablement(tmp_path):
    storage = SyncStorage(tmp_path / "sync.db")
    await storage.initialize()
    service = UserDataSyncEnablementService(storage)
    await service.load()
    return service


@pytest.fixture
def sync_service():
    return FakeSyncService()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    return AutoSyncConfig(interval_seconds=3600, debounce_ms=10, max_backoff_multiplier=60, rate_limit_seconds=10)


@pytest.fixture
async def make_service(sync_service, enablement, clock, config):
    services = []

    def factory(token="token", store_configured=True, auto_sync_config=None):
        service = UserDataAutoSyncService(
            sync_service, enablement, AuthTokenService(token), auto_sync_config or config,
            store_configured=store_configured, clock=clock,
        )
        services.append(service)
        return service

    yield factory

    for service in services:
        await service.dispose()


@pytest.fixture
async def started(make_service):
    """有効化済み・初回同期完了済みのサービス"""
    service = make_service()
    await service.enable()
    await settle()
    return service


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_enable_starts_and_syncs_immediately(self, make_service, sync_service):
        service = make_service()
        assert service.auto_sync is None

        await service.enable()
        await settle()

        assert service.auto_sync is not None
        assert sync_service.sync.await_count == 1

    @pytest.mark.asyncio
    async def test_not_started_without_token(self, make_service, sync_service):
        service = make_service(token=None)

        await service.enable()
        await settle()

        assert service.auto_sync is None
        assert service.is_auto_sync_enabled() == (False, "token is not available")
        assert sync_service.sync.await_count == 0

    @pytest.mark.asyncio
    async def test_not_started_without_store(self, make_service, sync_service):
        service = make_service(store_configured=False)

        await service.enable()
        await settle()

        assert service.auto_sync is None
        assert sync_service.sync.await_count == 0

    @pytest.mark.asyncio
    async def test_disable_stops_auto_sync(self, started, sync_service, enablement):
        await started.disable()

        assert started.auto_sync is None
        assert not enablement.is_enabled()
        sync_service.stop.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_token_change_restarts(self, started, sync_service):
        started.auth_token_service.set_token(None)
        await settle()
        assert started.auto_sync is None

        started.auth_token_service.set_token("new-token")
        await settle()

        assert started.auto_sync is not None
        assert sync_service.sync.await_count == 2

    @pytest.mark.asyncio
    async def test_interval_sync_is_rearmed(self, make_service, sync_service):
        service = make_service(auto_sync_config=AutoSyncConfig(interval_seconds=0.02, debounce_ms=10))

        await service.enable()
        await settle(0.2)

        assert sync_service.sync.await_count >= 2

    @pytest.mark.asyncio
    async def test_dispose_releases_everything(self, started, sync_service):
        await started.dispose()

        assert started.auto_sync is None
        sync_service.stop.assert_awaited_once()
        assert started.trigger_auto_sync(["extensions"]) is None


class TestTriggers:

    @pytest.mark.asyncio
    async def test_trigger_is_rate_limited(self, started, sync_service, clock):
        assert started.trigger_auto_sync(["windowFocus"]) is None

        clock.now += 11
        completion = started.trigger_auto_sync(["windowFocus"])

        assert completion is not None
        await asyncio.wait_for(completion, 1)
        assert sync_service.sync.await_count == 2

    @pytest.mark.asyncio
    async def test_resource_sources_bypass_rate_limit(self, started, sync_service):
        completion = started.trigger_auto_sync(["extensions"])

        await asyncio.wait_for(completion, 1)
        assert sync_service.sync.await_count == 2

    @pytest.mark.asyncio
    async def test_triggers_are_coalesced(self, started, sync_service, clock):
        clock.now += 11
        first = started.trigger_auto_sync(["windowFocus"])
        second = started.trigger_auto_sync(["extensions"])

        assert first is second
        assert started.sources == ["windowFocus", "extensions"]

        await asyncio.wait_for(second, 1)
        assert sync_service.sync.await_count == 2
        assert started.sources == []

    @pytest.mark.asyncio
    async def test_trigger_when_disabled_is_dropped(self, make_service, sync_service):
        service = make_service()

        assert service.trigger_auto_sync(["extensions"]) is None
        await settle()
        assert sync_service.sync.await_count == 0

    @pytest.mark.asyncio
    async def test_disable_cancels_pending_trigger(self, make_service, sync_service):
        service = make_service(auto_sync_config=AutoSyncConfig(interval_seconds=3600, debounce_ms=500))
        await service.enable()
        await settle()

        completion = service.trigger_auto_sync(["extensions"])
        await service.disable()
        await settle()

        assert completion.cancelled()
        assert service.sources == []
        assert sync_service.sync.await_count == 1

    @pytest.mark.asyncio
    async def test_local_change_triggers_sync(self, started, sync_service):
        sync_service.on_did_change_local.fire("extensions")
        await settle()

        assert sync_service.sync.await_count == 2

    @pytest.mark.asyncio
    async def test_resource_enablement_triggers_sync(self, started, sync_service, enablement):
        await enablement.set_resource_enablement("extensions", False)
        await settle()
        assert sync_service.sync.await_count == 1

        await enablement.set_resource_enablement("extensions", True)
        await settle()

        assert sync_service.sync.await_count == 2

    @pytest.mark.asyncio
    async def test_resource_enablement_source_bypasses_rate_limit(self, started):
        assert started.trigger_auto_sync([RESOURCE_ENABLEMENT_SOURCE]) is not None

    @pytest.mark.asyncio
    async def test_triggered_cycle_runs_sync(self, started, sync_service):
        activity_logger = get_logger("user_data_sync.layers.trigger_layer.auto_sync_service")
        triggered_before = activity_logger.metrics.counters['sync/triggered']

        completion = started.trigger_auto_sync(["extensions"])
        await asyncio.wait_for(completion, 1)

        assert sync_service.sync.await_count == 2
        assert activity_logger.metrics.counters['sync/triggered'] == triggered_before + 1


class TestErrorRecovery:

    @pytest.fixture
    def errors(self):
        return []

    async def start_failing(self, make_service, sync_service, errors, code):
        sync_service.sync.side_effect = UserDataSyncError("failed", code, "extensions")
        service = make_service()
        service.on_error.subscribe(errors.append)
        await service.enable()
        await settle()
        return service

    @pytest.mark.asyncio
    async def test_turned_off_resets_and_disables(self, make_service, sync_service, enablement, errors):
        service = await self.start_failing(make_service, sync_service, errors, UserDataSyncErrorCode.TURNED_OFF)

        sync_service.reset_local.assert_awaited_once()
        assert not enablement.is_enabled()
        assert service.auto_sync is None
        assert [e.code for e in errors] == [UserDataSyncErrorCode.TURNED_OFF]

    @pytest.mark.asyncio
    async def test_session_expired_resets_and_disables(self, make_service, sync_service, enablement, errors):
        await self.start_failing(make_service, sync_service, errors, UserDataSyncErrorCode.SESSION_EXPIRED)

        sync_service.reset_local.assert_awaited_once()
        assert not enablement.is_enabled()

    @pytest.mark.asyncio
    async def test_too_many_requests_disables_without_reset(self, make_service, sync_service, enablement, errors):
        service = await self.start_failing(make_service, sync_service, errors,
                                           UserDataSyncErrorCode.TOO_MANY_REQUESTS)

        sync_service.reset_local.assert_not_awaited()
        assert not enablement.is_enabled()
        assert service.auto_sync is None
        assert [e.code for e in errors] == [UserDataSyncErrorCode.TOO_MANY_REQUESTS]

    @pytest.mark.asyncio
    async def test_transient_error_backs_off(self, make_service, sync_service, enablement, errors):
        service = await self.start_failing(make_service, sync_service, errors, UserDataSyncErrorCode.NETWORK)

        assert service.successive_failures == 1
        assert enablement.is_enabled()
        assert service.auto_sync is not None
        assert [e.code for e in errors] == [UserDataSyncErrorCode.NETWORK]

    @pytest.mark.asyncio
    async def test_precondition_failed_backs_off(self, make_service, sync_service, enablement, errors):
        service = await self.start_failing(make_service, sync_service, errors,
                                           UserDataSyncErrorCode.PRECONDITION_FAILED)

        assert service.successive_failures == 1
        assert enablement.is_enabled()

    @pytest.mark.asyncio
    async def test_unknown_exception_is_normalized(self, make_service, sync_service, errors):
        sync_service.sync.side_effect = ValueError("unexpected")
        service = make_service()
        service.on_error.subscribe(errors.append)

        await service.enable()
        await settle()

        assert [e.code for e in errors] == [UserDataSyncErrorCode.UNKNOWN]
        assert service.successive_failures == 1

    @pytest.mark.asyncio
    async def test_success_resets_failures(self, make_service, sync_service, errors):
        service = await self.start_failing(make_service, sync_service, errors, UserDataSyncErrorCode.NETWORK)

        sync_service.sync.side_effect = None
        completion = service.trigger_auto_sync(["extensions"])
        await asyncio.wait_for(completion, 1)
        await settle()

        assert service.successive_failures == 0
