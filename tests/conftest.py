"""
共通フィクスチャ - 一時ストレージ・メモリ上リモートストア・マシン単位のシンクロナイザー
"""

from dataclasses import dataclass

import pytest

from user_data_sync.core.models import ExtensionIdentifier, LocalExtension, SyncData, SyncExtension
from user_data_sync.layers.extension_layer.local_registry import LocalExtensionRegistry
from user_data_sync.layers.storage_layer.remote_store import InMemoryRemoteStore
from user_data_sync.layers.storage_layer.sync_storage import SyncStorage
from user_data_sync.layers.sync_layer.extensions_merge import format_extensions, parse_extensions
from user_data_sync.layers.sync_layer.extensions_sync import ExtensionsSynchronizer
from user_data_sync.layers.trigger_layer.enablement import UserDataSyncEnablementService


@dataclass
class Machine:
    """1台分の同期環境"""
    machine_id: str
    storage: SyncStorage
    registry: LocalExtensionRegistry
    enablement_service: UserDataSyncEnablementService
    synchronizer: ExtensionsSynchronizer

    def install(self, extension_id: str, version: str = "1.0.0", **kwargs) -> LocalExtension:
        extension = LocalExtension(identifier=ExtensionIdentifier(extension_id), version=version, **kwargs)
        self.registry.add_installed(extension)
        return extension


def ext(extension_id: str, **kwargs) -> SyncExtension:
    return SyncExtension(identifier=ExtensionIdentifier(extension_id), **kwargs)


async def write_remote(store: InMemoryRemoteStore, extensions, machine_id: str = "other-machine", version: int = 3,
                       content: str = None) -> str:
    """別マシンによるリモート書き込み"""
    payload = SyncData(version=version, machine_id=machine_id,
                       content=content if content is not None else format_extensions(extensions))
    return await store.write("extensions", payload.to_json(), None)


def read_remote(store: InMemoryRemoteStore):
    content = store.content("extensions")
    if content is None:
        return None
    return parse_extensions(SyncData.from_json(content).content)


@pytest.fixture
def remote_store():
    return InMemoryRemoteStore()


@pytest.fixture
def make_machine(tmp_path, remote_store):
    """マシン生成ファクトリ"""
    async def factory(machine_id: str = "machine-a", store=None, gallery_enabled: bool = True,
                      ignored_extensions=None) -> Machine:
        storage = SyncStorage(tmp_path / machine_id / "sync.db")
        assert await storage.initialize()

        enablement_service = UserDataSyncEnablementService(storage)
        await enablement_service.load()
        await enablement_service.set_enablement(True)

        registry = LocalExtensionRegistry(gallery_enabled=gallery_enabled)
        synchronizer = ExtensionsSynchronizer(
            storage, store or remote_store, enablement_service, machine_id,
            registry, registry, registry,
            ignored_extensions=ignored_extensions,
        )
        return Machine(machine_id, storage, registry, enablement_service, synchronizer)

    return factory


@pytest.fixture
async def machine(make_machine):
    machine = await make_machine()
    yield machine
    machine.synchronizer.dispose()
