"""
同期処理の共通骨格
ステータス管理・リモート取得（条件付き）・互換性チェック・CAS書き込み・最終同期スナップショット更新
"""

import logging
from abc import ABC, abstractmethod
from typing import List, Optional

from ...core.errors import ErrorHandler, LocalStateCorruptionError, UserDataSyncError, UserDataSyncErrorCode
from ...core.events import Emitter
from ...core.models import (LastSyncUserData, RemoteUserData, SyncData, SyncExtension, SyncResource, SyncResult,
                            SyncStatus)
from ..storage_layer.remote_store import RemoteStore
from ..storage_layer.sync_storage import BackupEntry, SyncStorage
from ..trigger_layer.enablement import UserDataSyncEnablementService

logger = logging.getLogger(__name__)


class AbstractSynchronizer(ABC):
    """リソース同期の基底クラス"""

    # リモートペイロードのスキーマバージョン
    version: int = 1

    def __init__(self,
                 resource: SyncResource,
                 storage: SyncStorage,
                 remote_store: RemoteStore,
                 enablement_service: UserDataSyncEnablementService,
                 machine_id: str,
                 error_handler: Optional[ErrorHandler] = None):
        self.resource = resource
        self.storage = storage
        self.remote_store = remote_store
        self.enablement_service = enablement_service
        self.machine_id = machine_id
        self.error_handler = error_handler or ErrorHandler()

        self.status = SyncStatus.IDLE
        self.on_did_change_status: Emitter[SyncStatus] = Emitter()
        self.on_did_change_local: Emitter[SyncResource] = Emitter()

        self.sync_resource_log_label = resource.label
        # CAS失敗の次サイクルはキャッシュを使わず取得し直す
        self._refetch_remote = False

    def set_status(self, status: SyncStatus) -> None:
        if self.status != status:
            self.status = status
            self.on_did_change_status.fire(status)

    def is_enabled(self) -> bool:
        return self.enablement_service.is_resource_enabled(self.resource.value)

    async def sync(self, reason: str = "") -> SyncResult:
        """1サイクルの同期（失敗は SyncResult.error に正規化して返す）"""
        if not self.is_enabled():
            logger.info(f"{self.sync_resource_log_label}: Skipped synchronizing {self.resource.value} as it is disabled.")
            return SyncResult(self.resource, self.status)

        if self.status == SyncStatus.SYNCING:
            logger.info(f"{self.sync_resource_log_label}: Skipped synchronizing as it is already syncing.")
            return SyncResult(self.resource, self.status)

        logger.debug(f"{self.sync_resource_log_label}: Started synchronizing {self.resource.value}... {reason}".rstrip())
        self.set_status(SyncStatus.SYNCING)

        try:
            last_sync_user_data = await self.get_last_sync_user_data()
            remote_user_data = await self.get_remote_user_data(last_sync_user_data)
            self.check_compatibility(remote_user_data)

            result = await self.perform_sync(remote_user_data, last_sync_user_data)
            self._refetch_remote = False
            logger.debug(f"{self.sync_resource_log_label}: Finished synchronizing {self.resource.value}.")
            return result

        except LocalStateCorruptionError:
            raise

        except Exception as e:
            error = self.error_handler.normalize(e, self.resource.value)
            if error.code == UserDataSyncErrorCode.PRECONDITION_FAILED:
                self._refetch_remote = True
                logger.info(f"{self.sync_resource_log_label}: Failed to synchronize as there is a new remote version "
                            f"available. Synchronizing again on next trigger.")
            else:
                logger.error(f"{self.sync_resource_log_label}: Failed to synchronize: {error}")
            return SyncResult(self.resource, SyncStatus.IDLE, error=error)

        finally:
            self.set_status(SyncStatus.IDLE)

    async def replace(self, content: str) -> bool:
        """指定ペイロードでローカル・リモート両方を置き換え"""
        sync_data = self.parse_sync_data(content)
        self.check_compatibility(RemoteUserData(None, sync_data))
        await self.stop()

        try:
            logger.info(f"{self.sync_resource_log_label}: Started resetting {self.resource.value}...")
            self.set_status(SyncStatus.SYNCING)
            last_sync_user_data = await self.get_last_sync_user_data()
            remote_user_data = await self.get_remote_user_data(last_sync_user_data)
            await self.perform_replace(sync_data, remote_user_data, last_sync_user_data)
            logger.info(f"{self.sync_resource_log_label}: Finished resetting {self.resource.value}.")
            return True
        finally:
            self.set_status(SyncStatus.IDLE)

    async def stop(self) -> None:
        """停止要求（冪等）。進行中のサイクルは完了まで実行される"""
        if self.status == SyncStatus.SYNCING:
            logger.debug(f"{self.sync_resource_log_label}: Stop requested while synchronizing.")

    def dispose(self) -> None:
        """イベント購読の解放"""

    async def reset_local(self) -> None:
        """最終同期スナップショットを破棄"""
        await self.storage.delete_last_sync(self.resource.value)
        self._refetch_remote = False
        logger.info(f"{self.sync_resource_log_label}: Reset local sync state.")

    # ---- リモート/最終同期 ------------------------------------------------
    async def get_last_sync_user_data(self) -> Optional[LastSyncUserData]:
        return await self.storage.get_last_sync(self.resource.value)

    async def get_remote_user_data(self, last_sync_user_data: Optional[LastSyncUserData]) -> RemoteUserData:
        """リモート取得（最終同期の参照で条件付き取得、未変更なら最終同期の内容を使用）"""
        ref = None
        if last_sync_user_data is not None and not self._refetch_remote:
            ref = last_sync_user_data.ref

        content = await self.remote_store.read(self.resource.value, ref)
        if content.not_modified and last_sync_user_data is not None:
            return RemoteUserData(last_sync_user_data.ref, last_sync_user_data.sync_data)

        sync_data = self.parse_sync_data(content.content) if content.content else None
        return RemoteUserData(content.ref, sync_data)

    def parse_sync_data(self, content: str) -> SyncData:
        try:
            return SyncData.from_json(content)
        except (ValueError, KeyError, TypeError) as e:
            raise UserDataSyncError(
                "Cannot parse sync data as it is not compatible with the current version.",
                UserDataSyncErrorCode.INCOMPATIBLE,
                self.resource.value
            ) from e

    def check_compatibility(self, remote_user_data: RemoteUserData) -> None:
        sync_data = remote_user_data.sync_data
        if sync_data is not None and sync_data.version > self.version:
            raise UserDataSyncError(
                f"Cannot sync {self.resource.value} as its version {sync_data.version} "
                f"is not compatible with supported version {self.version}.",
                UserDataSyncErrorCode.INCOMPATIBLE,
                self.resource.value
            )

    async def update_remote_user_data(self, content: str, ref: Optional[str]) -> RemoteUserData:
        """リモート書き込み（ref=None は無条件上書き）"""
        sync_data = SyncData(version=self.version, machine_id=self.machine_id, content=content)
        new_ref = await self.remote_store.write(self.resource.value, sync_data.to_json(), ref)
        return RemoteUserData(new_ref, sync_data)

    async def update_last_sync_user_data(self, remote_user_data: RemoteUserData,
                                         skipped_extensions: Optional[List[SyncExtension]] = None) -> None:
        await self.storage.set_last_sync(self.resource.value, LastSyncUserData(
            ref=remote_user_data.ref,
            sync_data=remote_user_data.sync_data,
            skipped_extensions=list(skipped_extensions or []),
        ))

    def is_last_sync_from_current_machine(self, remote_user_data: RemoteUserData) -> bool:
        sync_data = remote_user_data.sync_data
        return sync_data is not None and sync_data.machine_id == self.machine_id

    async def backup_local(self, content: str) -> Optional[int]:
        return await self.storage.add_backup(self.resource.value, content)

    async def get_local_backups(self, limit: int = 20) -> List[BackupEntry]:
        return await self.storage.get_backups(self.resource.value, limit)

    # ---- リソース固有 -----------------------------------------------------
    @abstractmethod
    async def perform_sync(self, remote_user_data: RemoteUserData,
                           last_sync_user_data: Optional[LastSyncUserData]) -> SyncResult:
        """プレビュー生成と適用"""

    @abstractmethod
    async def perform_replace(self, sync_data: SyncData, remote_user_data: RemoteUserData,
                              last_sync_user_data: Optional[LastSyncUserData]) -> None:
        """置き換えの適用"""

    @abstractmethod
    async def pull(self) -> None:
        """リモートをローカルに反映"""

    @abstractmethod
    async def push(self) -> None:
        """ローカルでリモートを上書き"""

    @abstractmethod
    async def has_local_data(self) -> bool:
        """同期対象のローカルデータがあるか"""

    @abstractmethod
    async def resolve_content(self, uri: str) -> Optional[str]:
        """比較表示用の整形済みコンテンツ"""

    @abstractmethod
    async def accept_conflict(self, conflict_uri: str, content: str) -> None:
        """競合の解決"""
