"""
同期サービス - 全シンクロナイザーの実行とローカル変更通知の集約
"""

import logging
from typing import List, Optional

from ...core.errors import UserDataSyncError, UserDataSyncErrorCode
from ...core.events import Emitter, RegistrationGroup
from ...core.models import SyncResource, SyncResult, SyncStatus
from .abstract_synchronizer import AbstractSynchronizer

logger = logging.getLogger(__name__)

# 以降のリソースを同期しても無駄になるエラー
TERMINAL_ERROR_CODES = {
    UserDataSyncErrorCode.TURNED_OFF,
    UserDataSyncErrorCode.SESSION_EXPIRED,
    UserDataSyncErrorCode.TOO_MANY_REQUESTS,
    UserDataSyncErrorCode.UNAUTHORIZED,
}


class UserDataSyncService:
    """同期サービス"""

    def __init__(self, synchronizers: List[AbstractSynchronizer]):
        self.synchronizers = list(synchronizers)
        self.status = SyncStatus.IDLE
        self.last_sync_results: List[SyncResult] = []

        self.on_did_change_status: Emitter[SyncStatus] = Emitter()
        # ローカル変更のあったリソース名
        self.on_did_change_local: Emitter[str] = Emitter()

        self._registrations = RegistrationGroup()
        for synchronizer in self.synchronizers:
            self._registrations.add(
                synchronizer.on_did_change_local.subscribe(lambda resource: self.on_did_change_local.fire(resource.value))
            )

    def _set_status(self, status: SyncStatus) -> None:
        if self.status != status:
            self.status = status
            self.on_did_change_status.fire(status)

    def get_synchronizer(self, resource: SyncResource) -> Optional[AbstractSynchronizer]:
        return next((s for s in self.synchronizers if s.resource == resource), None)

    async def sync(self) -> List[SyncResult]:
        """全リソースを順に同期し、失敗があれば最初のエラーを送出"""
        self._set_status(SyncStatus.SYNCING)
        results: List[SyncResult] = []
        try:
            for synchronizer in self.synchronizers:
                result = await synchronizer.sync()
                results.append(result)
                if isinstance(result.error, UserDataSyncError) and result.error.code in TERMINAL_ERROR_CODES:
                    break
        finally:
            self.last_sync_results = results
            self._set_status(SyncStatus.IDLE)

        for result in results:
            logger.debug(result.summary())

        errors = [result.error for result in results if result.error is not None]
        if errors:
            raise errors[0]
        return results

    async def pull(self) -> None:
        for synchronizer in self.synchronizers:
            await synchronizer.pull()

    async def push(self) -> None:
        for synchronizer in self.synchronizers:
            await synchronizer.push()

    async def stop(self) -> None:
        for synchronizer in self.synchronizers:
            await synchronizer.stop()

    async def reset_local(self) -> None:
        """ローカルの同期状態を破棄（ユーザーデータ自体は変更しない）"""
        for synchronizer in self.synchronizers:
            await synchronizer.reset_local()
        logger.info("Did reset the local sync state.")

    async def has_local_data(self) -> bool:
        for synchronizer in self.synchronizers:
            if await synchronizer.has_local_data():
                return True
        return False

    def dispose(self) -> None:
        self._registrations.dispose()
        for synchronizer in self.synchronizers:
            synchronizer.dispose()
