"""
拡張機能の同期
インストール済み一覧と有効・無効状態をリモートと3-wayマージで同期する
"""

import asyncio
import json
import logging
from typing import List, Optional

from ...core.errors import ErrorHandler
from ...core.models import (ExtensionIdentifier, ExtensionType, LastSyncUserData, LocalExtension,
                            RemoteUserData, SyncData, SyncExtension, SyncPreview, SyncResource, SyncResult, SyncStatus,
                            are_same_extensions)
from ..extension_layer.management import (ExtensionEnablementService, ExtensionGalleryService,
                                          ExtensionManagementService, get_ignored_extensions)
from ..storage_layer.remote_store import RemoteStore
from ..storage_layer.sync_storage import SyncStorage
from ..trigger_layer.delayer import Delayer
from ..trigger_layer.enablement import UserDataSyncEnablementService
from .abstract_synchronizer import AbstractSynchronizer
from .extensions_merge import format_extensions, merge

logger = logging.getLogger(__name__)


class ExtensionsSynchronizer(AbstractSynchronizer):
    """拡張機能シンクロナイザー

    バージョン履歴:
      1 - 有効状態を enabled で保持
      2 - disabled に変更
      3 - installed を追加（同期によるインストール対象）
    """

    version = 3

    CURRENT_URI = "extensions://current.json"
    REMOTE_URI = "extensions://remote.json"
    LAST_SYNC_URI = "extensions://lastSync.json"

    # ローカル変更通知の合流待ち（秒）
    LOCAL_CHANGE_DELAY = 0.5

    def __init__(self,
                 storage: SyncStorage,
                 remote_store: RemoteStore,
                 enablement_service: UserDataSyncEnablementService,
                 machine_id: str,
                 management_service: ExtensionManagementService,
                 extension_enablement_service: ExtensionEnablementService,
                 gallery_service: ExtensionGalleryService,
                 ignored_extensions: Optional[List[str]] = None,
                 error_handler: Optional[ErrorHandler] = None):
        super().__init__(SyncResource.EXTENSIONS, storage, remote_store, enablement_service, machine_id, error_handler)
        self.management_service = management_service
        self.extension_enablement_service = extension_enablement_service
        self.gallery_service = gallery_service
        self.ignored_extensions = list(ignored_extensions or [])

        self._local_change_delayer = Delayer(self.LOCAL_CHANGE_DELAY)
        self._registrations = [
            management_service.on_did_install_extension.subscribe(lambda _: self._trigger_local_change()),
            management_service.on_did_uninstall_extension.subscribe(lambda _: self._trigger_local_change()),
            extension_enablement_service.on_did_change_enablement.subscribe(lambda _: self._trigger_local_change()),
        ]

    def is_enabled(self) -> bool:
        return super().is_enabled() and self.gallery_service.is_enabled()

    def _trigger_local_change(self) -> None:
        """ローカル変更の通知（500ms で合流）"""
        if not self.is_enabled():
            return
        self._local_change_delayer.trigger(self._fire_local_change)

    async def _fire_local_change(self) -> None:
        self.on_did_change_local.fire(self.resource)

    def dispose(self) -> None:
        self._local_change_delayer.cancel()
        for registration in self._registrations:
            registration.dispose()
        self._registrations = []

    # ---- 同期 -------------------------------------------------------------
    async def perform_sync(self, remote_user_data: RemoteUserData,
                           last_sync_user_data: Optional[LastSyncUserData]) -> SyncResult:
        preview = await self.generate_preview(remote_user_data, last_sync_user_data)
        skipped = await self.apply(preview)
        return SyncResult(
            self.resource,
            SyncStatus.IDLE,
            local_changed=preview.has_local_changed,
            remote_changed=preview.has_remote_changed,
            skipped=len(skipped),
        )

    async def pull(self) -> None:
        """リモートをローカルに反映（スキップ一覧はリセット）"""
        if not self.is_enabled():
            logger.info("Extensions: Skipped pulling extensions as it is disabled.")
            return
        if self.status == SyncStatus.SYNCING:
            logger.info("Extensions: Skipped pulling extensions as it is already syncing.")
            return

        await self.stop()
        try:
            logger.info("Extensions: Started pulling extensions...")
            self.set_status(SyncStatus.SYNCING)

            last_sync_user_data = await self.get_last_sync_user_data()
            remote_user_data = await self.get_remote_user_data(last_sync_user_data)
            self.check_compatibility(remote_user_data)

            if remote_user_data.sync_data is not None:
                installed = await self.management_service.get_installed()
                local_extensions = self.get_local_extensions(installed)
                remote_extensions = await self.parse_and_migrate_extensions(remote_user_data.sync_data)
                ignored = get_ignored_extensions(installed, self.ignored_extensions)
                merge_result = merge(local_extensions, remote_extensions, local_extensions, [], ignored)
                await self.apply(SyncPreview(
                    merge=merge_result,
                    remote_user_data=remote_user_data,
                    last_sync_user_data=last_sync_user_data,
                    local_extensions=local_extensions,
                    skipped_extensions=[],
                ))
            else:
                logger.info("Extensions: Remote extensions does not exist.")

            logger.info("Extensions: Finished pulling extensions.")
        finally:
            self.set_status(SyncStatus.IDLE)

    async def push(self) -> None:
        """ローカルでリモートを無条件に上書き"""
        if not self.is_enabled():
            logger.info("Extensions: Skipped pushing extensions as it is disabled.")
            return
        if self.status == SyncStatus.SYNCING:
            logger.info("Extensions: Skipped pushing extensions as it is already syncing.")
            return

        await self.stop()
        try:
            logger.info("Extensions: Started pushing extensions...")
            self.set_status(SyncStatus.SYNCING)

            installed = await self.management_service.get_installed()
            local_extensions = self.get_local_extensions(installed)
            ignored = get_ignored_extensions(installed, self.ignored_extensions)
            merge_result = merge(local_extensions, None, None, [], ignored)

            last_sync_user_data = await self.get_last_sync_user_data()
            remote_user_data = await self.get_remote_user_data(last_sync_user_data)
            await self.apply(SyncPreview(
                merge=merge_result,
                remote_user_data=remote_user_data,
                last_sync_user_data=last_sync_user_data,
                local_extensions=local_extensions,
                skipped_extensions=[],
            ), force_push=True)

            logger.info("Extensions: Finished pushing extensions.")
        finally:
            self.set_status(SyncStatus.IDLE)

    async def perform_replace(self, sync_data: SyncData, remote_user_data: RemoteUserData,
                              last_sync_user_data: Optional[LastSyncUserData]) -> None:
        sync_extensions = await self.parse_and_migrate_extensions(sync_data)
        installed = await self.management_service.get_installed()
        local_extensions = self.get_local_extensions(installed)
        ignored = get_ignored_extensions(installed, self.ignored_extensions)
        merge_result = merge(local_extensions, sync_extensions, local_extensions, [], ignored)
        merge_result.remote = sync_extensions

        await self.apply(SyncPreview(
            merge=merge_result,
            remote_user_data=remote_user_data,
            last_sync_user_data=last_sync_user_data,
            local_extensions=local_extensions,
            skipped_extensions=[],
            force_remote_changed=True,
        ))

    async def generate_preview(self, remote_user_data: RemoteUserData,
                               last_sync_user_data: Optional[LastSyncUserData]) -> SyncPreview:
        remote_extensions = None
        if remote_user_data.sync_data is not None:
            remote_extensions = await self.parse_and_migrate_extensions(remote_user_data.sync_data)

        skipped_extensions = last_sync_user_data.skipped_extensions if last_sync_user_data else []
        from_current_machine = self.is_last_sync_from_current_machine(remote_user_data)

        last_sync_extensions = None
        if last_sync_user_data is None:
            # ローカルの最終同期が失われていても、リモートがこのマシンの書き込みなら基準として使う
            if from_current_machine and remote_user_data.sync_data is not None:
                last_sync_extensions = remote_extensions
        elif last_sync_user_data.sync_data is not None:
            last_sync_extensions = await self.parse_and_migrate_extensions(last_sync_user_data.sync_data)

        installed = await self.management_service.get_installed()
        local_extensions = self.get_local_extensions(installed)
        ignored = get_ignored_extensions(installed, self.ignored_extensions)

        if remote_extensions is not None:
            logger.debug("Extensions: Merging remote extensions with local extensions...")
        else:
            logger.debug("Extensions: Remote extensions does not exist. Synchronizing extensions for the first time.")

        merge_result = merge(local_extensions, remote_extensions, last_sync_extensions, skipped_extensions, ignored)
        return SyncPreview(
            merge=merge_result,
            remote_user_data=remote_user_data,
            last_sync_user_data=last_sync_user_data,
            local_extensions=local_extensions,
            skipped_extensions=skipped_extensions,
            is_last_sync_from_current_machine=from_current_machine,
        )

    async def apply(self, preview: SyncPreview, force_push: bool = False) -> List[SyncExtension]:
        """プレビューの適用、更新後のスキップ一覧を返す"""
        merge_result = preview.merge
        has_local_changed = preview.has_local_changed
        has_remote_changed = preview.has_remote_changed

        if not has_local_changed and not has_remote_changed:
            logger.info("Extensions: No changes found during synchronizing extensions.")

        skipped_extensions = list(preview.skipped_extensions)
        if has_local_changed:
            await self.backup_local(format_extensions(preview.local_extensions))
            skipped_extensions = await self.update_local_extensions(
                merge_result.added, merge_result.removed, merge_result.updated, skipped_extensions
            )

        remote_user_data = preview.remote_user_data
        if has_remote_changed:
            content = format_extensions(merge_result.remote or [])
            logger.debug("Extensions: Updating remote extensions...")
            remote_user_data = await self.update_remote_user_data(
                content, None if force_push else remote_user_data.ref
            )
            logger.info("Extensions: Updated remote extensions")

        last_sync_user_data = preview.last_sync_user_data
        if (has_local_changed or has_remote_changed or last_sync_user_data is None
                or last_sync_user_data.ref != remote_user_data.ref):
            logger.debug("Extensions: Updating last synchronized extensions...")
            await self.update_last_sync_user_data(remote_user_data, skipped_extensions)
            logger.info(f"Extensions: Updated last synchronized extensions. Skipped: {len(skipped_extensions)}")

        return skipped_extensions

    async def update_local_extensions(self,
                                      added: List[SyncExtension],
                                      removed: List[ExtensionIdentifier],
                                      updated: List[SyncExtension],
                                      skipped: List[SyncExtension]) -> List[SyncExtension]:
        """ローカルへの反映（1件の失敗は全体を止めずスキップ一覧に記録）"""
        removed_from_skipped: List[ExtensionIdentifier] = []
        added_to_skipped: List[SyncExtension] = []

        if removed:
            installed = await self.management_service.get_installed(ExtensionType.USER)
            to_remove = [e for e in installed if any(are_same_extensions(e.identifier, r) for r in removed)]
            results = await asyncio.gather(*[self._uninstall(extension) for extension in to_remove])
            removed_from_skipped.extend(e.identifier for e, uninstalled in zip(to_remove, results) if uninstalled)

        if added or updated:
            results = await asyncio.gather(*[self._apply_extension(e) for e in [*added, *updated]])
            for extension, applied in zip([*added, *updated], results):
                if applied:
                    removed_from_skipped.append(extension.identifier)
                else:
                    added_to_skipped.append(extension)

        new_skipped = [
            e for e in skipped
            if not any(are_same_extensions(e.identifier, r) for r in removed_from_skipped)
        ]
        for extension in added_to_skipped:
            if not any(are_same_extensions(e.identifier, extension.identifier) for e in new_skipped):
                new_skipped.append(extension)
        return new_skipped

    async def _uninstall(self, extension: LocalExtension) -> bool:
        logger.debug(f"Extensions: Uninstalling local extension... {extension.identifier.id}")
        try:
            await self.management_service.uninstall(extension)
            logger.info(f"Extensions: Uninstalled local extension. {extension.identifier.id}")
        except Exception as e:
            logger.error(f"Extensions: Failed to uninstall {extension.identifier.id}: {e}")
            return False
        return True

    async def _apply_extension(self, extension: SyncExtension) -> bool:
        """1件の追加・更新。適用できなければ False"""
        try:
            installed = await self.management_service.get_installed()
            installed_extension = next(
                (e for e in installed if are_same_extensions(e.identifier, extension.identifier)), None
            )

            # システム拡張機能は有効状態のみ同期
            if installed_extension is not None and installed_extension.type == ExtensionType.SYSTEM:
                await self._update_enablement(extension)
                return True

            gallery_extension = await self.gallery_service.get_compatible_extension(
                extension.identifier, extension.version
            )
            if gallery_extension is None:
                logger.info(f"Extensions: Skipped synchronizing extension because the compatible extension "
                            f"is not found. {extension.identifier.id}")
                return False

            await self._update_enablement(extension)

            # 同一バージョンがインストール済みでなければインストール
            if installed_extension is None or installed_extension.version != gallery_extension.version:
                logger.debug(f"Extensions: Installing extension... {gallery_extension.identifier.id} "
                             f"{gallery_extension.version}")
                await self.management_service.install_from_gallery(gallery_extension)
                logger.info(f"Extensions: Installed extension. {gallery_extension.identifier.id} "
                            f"{gallery_extension.version}")
            return True

        except Exception as e:
            logger.error(f"Extensions: Skipped synchronizing extension {extension.identifier.id}: {e}")
            return False

    async def _update_enablement(self, extension: SyncExtension) -> None:
        if extension.disabled:
            logger.debug(f"Extensions: Disabling extension... {extension.identifier.id}")
            await self.extension_enablement_service.disable_extension(extension.identifier)
            logger.info(f"Extensions: Disabled extension {extension.identifier.id}")
        else:
            logger.debug(f"Extensions: Enabling extension... {extension.identifier.id}")
            await self.extension_enablement_service.enable_extension(extension.identifier)
            logger.info(f"Extensions: Enabled extension {extension.identifier.id}")

    # ---- ローカル状態 -----------------------------------------------------
    def get_local_extensions(self, installed: List[LocalExtension]) -> List[SyncExtension]:
        disabled = self.extension_enablement_service.get_disabled_extensions()
        return [
            SyncExtension(
                identifier=ExtensionIdentifier(id=e.identifier.id, uuid=e.identifier.uuid),
                disabled=any(are_same_extensions(d, e.identifier) for d in disabled),
                installed=e.type == ExtensionType.USER,
            )
            for e in installed
        ]

    async def parse_and_migrate_extensions(self, sync_data: SyncData) -> List[SyncExtension]:
        """ペイロードの解析と旧バージョンからの移行"""
        items = json.loads(sync_data.content)

        if sync_data.version < 2:
            for item in items:
                if item.get("enabled") is False:
                    item["disabled"] = True
                item.pop("enabled", None)

        if sync_data.version < 3:
            system_extensions = await self.management_service.get_installed(ExtensionType.SYSTEM)
            for item in items:
                identifier = ExtensionIdentifier.from_dict(item["identifier"])
                if not any(are_same_extensions(e.identifier, identifier) for e in system_extensions):
                    item["installed"] = True

        return [SyncExtension.from_dict(item) for item in items]

    async def has_local_data(self) -> bool:
        try:
            installed = await self.management_service.get_installed()
            local_extensions = self.get_local_extensions(installed)
            return any(e.installed or e.disabled for e in local_extensions)
        except Exception as e:
            logger.debug(f"Extensions: Failed to read local extensions: {e}")
            return False

    async def resolve_content(self, uri: str) -> Optional[str]:
        if uri == self.CURRENT_URI:
            installed = await self.management_service.get_installed()
            return format_extensions(self.get_local_extensions(installed), pretty=True)

        if uri == self.REMOTE_URI:
            remote_user_data = await self.get_remote_user_data(None)
            if remote_user_data.sync_data is None:
                return None
            return format_extensions(await self.parse_and_migrate_extensions(remote_user_data.sync_data), pretty=True)

        if uri == self.LAST_SYNC_URI:
            last_sync_user_data = await self.get_last_sync_user_data()
            if last_sync_user_data is None or last_sync_user_data.sync_data is None:
                return None
            return format_extensions(await self.parse_and_migrate_extensions(last_sync_user_data.sync_data),
                                     pretty=True)

        return None

    async def accept_conflict(self, conflict_uri: str, content: str) -> None:
        raise RuntimeError("Extensions: Conflicts should not occur")
