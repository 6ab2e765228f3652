"""
コマンドライン - 拡張機能同期の手動実行・状態表示・自動同期の常駐実行

    user-data-sync --config-dir config --registry extensions.json sync
"""

import argparse
import asyncio
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional

from .config.sync_config import ConfigManager, SyncConfig
from .core.errors import LocalStateCorruptionError, UserDataSyncError
from .layers.extension_layer.local_registry import LocalExtensionRegistry
from .layers.storage_layer.remote_store import HttpRemoteStore, InMemoryRemoteStore, RemoteStore
from .layers.storage_layer.sync_storage import SyncStorage
from .layers.sync_layer.extensions_sync import ExtensionsSynchronizer
from .layers.sync_layer.sync_service import UserDataSyncService
from .layers.trigger_layer.auto_sync_service import UserDataAutoSyncService
from .layers.trigger_layer.enablement import AuthTokenService, UserDataSyncEnablementService
from .utils.enhanced_logger import setup_logging

COMMANDS = ["sync", "pull", "push", "reset", "enable", "disable", "status", "auto"]


@dataclass
class SyncEnvironment:
    config: SyncConfig
    storage: SyncStorage
    remote_store: RemoteStore
    registry: LocalExtensionRegistry
    enablement_service: UserDataSyncEnablementService
    auth_token_service: AuthTokenService
    sync_service: UserDataSyncService


async def build_environment(config_manager: ConfigManager, registry_path: Optional[Path]) -> SyncEnvironment:
    config = config_manager.load_config()
    token = config_manager.get_token()

    storage = SyncStorage(config.store.database_path)
    if not await storage.initialize():
        raise SystemExit(f"同期状態データベースを初期化できません: {config.store.database_path}")

    if config.store_configured:
        if not token:
            raise SystemExit("リモートストアを使うには USER_DATA_SYNC_TOKEN が必要です。")
        remote_store: RemoteStore = HttpRemoteStore(config.store.url, token, config.store.request_timeout_seconds)
    else:
        # ストア未設定時はメモリ上のストアで動作確認のみ
        remote_store = InMemoryRemoteStore()
        token = token or "local"

    enablement_service = UserDataSyncEnablementService(storage)
    await enablement_service.load()
    for resource, enabled in config.resources.items():
        if enabled is False:
            await enablement_service.set_resource_enablement(resource, False)

    registry = LocalExtensionRegistry(registry_path)
    machine_id = config.machine_id or await storage.get_machine_id()
    synchronizer = ExtensionsSynchronizer(
        storage, remote_store, enablement_service, machine_id,
        registry, registry, registry,
        ignored_extensions=config.extensions.ignored_extensions,
    )

    return SyncEnvironment(
        config=config,
        storage=storage,
        remote_store=remote_store,
        registry=registry,
        enablement_service=enablement_service,
        auth_token_service=AuthTokenService(token),
        sync_service=UserDataSyncService([synchronizer]),
    )


async def print_status(env: SyncEnvironment) -> None:
    print(f"Sync enabled:     {env.enablement_service.is_enabled()}")
    print(f"Remote store:     {env.config.store.url or '(in-memory)'}")
    for synchronizer in env.sync_service.synchronizers:
        resource = synchronizer.resource.value
        last_sync = await env.storage.get_last_sync(resource)
        print(f"{synchronizer.resource.label}:")
        print(f"  enabled:        {synchronizer.is_enabled()}")
        print(f"  last sync ref:  {last_sync.ref if last_sync else '-'}")
        print(f"  skipped:        {len(last_sync.skipped_extensions) if last_sync else 0}")
        print(f"  backups:        {len(await synchronizer.get_local_backups())}")


async def run_auto(env: SyncEnvironment) -> None:
    """自動同期を中断されるまで実行"""
    if not env.config.store_configured:
        print("Auto sync requires a remote store (store.url).", file=sys.stderr)
        return

    auto_sync_service = UserDataAutoSyncService(
        env.sync_service,
        env.enablement_service,
        env.auth_token_service,
        env.config.auto_sync,
        store_configured=env.config.store_configured,
    )
    auto_sync_service.on_error.subscribe(lambda error: print(f"Sync error: {error}", file=sys.stderr))
    await auto_sync_service.enable()

    try:
        await asyncio.Event().wait()
    finally:
        await auto_sync_service.dispose()


async def run(command: str, config_manager: ConfigManager, registry_path: Optional[Path]) -> int:
    env = await build_environment(config_manager, registry_path)
    try:
        if command == "sync":
            try:
                results = await env.sync_service.sync()
            except UserDataSyncError as e:
                print(f"Sync failed: {e}", file=sys.stderr)
                return 1
            for result in results:
                print(result.summary())

        elif command == "pull":
            await env.sync_service.pull()
        elif command == "push":
            await env.sync_service.push()
        elif command == "reset":
            await env.sync_service.reset_local()
        elif command == "enable":
            await env.enablement_service.set_enablement(True)
        elif command == "disable":
            await env.enablement_service.set_enablement(False)
        elif command == "status":
            await print_status(env)
        elif command == "auto":
            await run_auto(env)

        await env.storage.cleanup_old_backups(env.config.store.backup_retention_days)
        return 0

    finally:
        env.sync_service.dispose()
        await env.remote_store.close()


def main(argv: Optional[Iterable[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="User data sync for extensions")
    parser.add_argument("--config-dir", default="config", help="設定ディレクトリ（main.yaml など）")
    parser.add_argument("--registry", help="ローカル拡張機能レジストリのJSONファイル")
    parser.add_argument("--init-config", action="store_true", help="設定テンプレートを作成")
    parser.add_argument("command", choices=COMMANDS, help="実行するコマンド")
    args = parser.parse_args(list(argv) if argv is not None else None)

    config_manager = ConfigManager(args.config_dir)
    if args.init_config:
        config_manager.save_config_template()

    config = config_manager.load_config()
    setup_logging(config.logging)

    registry_path = Path(args.registry) if args.registry else None
    try:
        return asyncio.run(run(args.command, config_manager, registry_path))
    except KeyboardInterrupt:
        return 0
    except LocalStateCorruptionError as e:
        raise SystemExit(f"ローカルの同期状態が壊れています。reset を実行してください: {e}")


if __name__ == "__main__":
    sys.exit(main())
