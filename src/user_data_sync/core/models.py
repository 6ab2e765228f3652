"""データモデル定義"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class SyncResource(Enum):
    """同期リソース種別"""
    SETTINGS = "settings"
    KEYBINDINGS = "keybindings"
    SNIPPETS = "snippets"
    EXTENSIONS = "extensions"
    GLOBAL_STATE = "globalState"

    @property
    def label(self) -> str:
        return self.value[0].upper() + self.value[1:]


ALL_SYNC_RESOURCES: List[str] = [resource.value for resource in SyncResource]


class SyncStatus(Enum):
    """同期ステータス"""
    IDLE = "idle"
    SYNCING = "syncing"


class ExtensionType(Enum):
    """拡張機能タイプ"""
    SYSTEM = "system"
    USER = "user"


@dataclass(frozen=True)
class ExtensionIdentifier:
    """拡張機能の識別子"""
    id: str
    uuid: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"id": self.id}
        if self.uuid:
            data["uuid"] = self.uuid
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExtensionIdentifier":
        return cls(id=data["id"], uuid=data.get("uuid"))


def are_same_extensions(a: ExtensionIdentifier, b: ExtensionIdentifier) -> bool:
    """両方にUUIDがあればUUIDで、なければIDの大文字小文字を無視して比較"""
    if a.uuid and b.uuid:
        return a.uuid == b.uuid
    if a.id == b.id:
        return True
    return a.id.lower() == b.id.lower()


@dataclass
class SyncExtension:
    """同期対象の拡張機能"""
    identifier: ExtensionIdentifier
    version: Optional[str] = None
    disabled: bool = False
    installed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"identifier": self.identifier.to_dict()}
        if self.version:
            data["version"] = self.version
        if self.disabled:
            data["disabled"] = True
        if self.installed:
            data["installed"] = True
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncExtension":
        return cls(
            identifier=ExtensionIdentifier.from_dict(data["identifier"]),
            version=data.get("version"),
            disabled=bool(data.get("disabled", False)),
            installed=bool(data.get("installed", False)),
        )


@dataclass
class LocalExtension:
    """ローカルにインストール済みの拡張機能"""
    identifier: ExtensionIdentifier
    type: ExtensionType = ExtensionType.USER
    version: str = "0.0.0"
    machine_scoped: bool = False


@dataclass
class GalleryExtension:
    """ギャラリー（カタログ）上の拡張機能"""
    identifier: ExtensionIdentifier
    version: str
    display_name: Optional[str] = None


@dataclass
class SyncData:
    """リモートに保存されるスキーマ付きペイロード"""
    version: int
    machine_id: str
    content: str

    def to_json(self) -> str:
        return json.dumps({"version": self.version, "machineId": self.machine_id, "content": self.content})

    @classmethod
    def from_json(cls, raw: str) -> "SyncData":
        data = json.loads(raw)
        return cls(version=int(data["version"]), machine_id=data.get("machineId", ""), content=data["content"])


@dataclass
class RemoteUserData:
    """リモートスナップショット（参照トークン + ペイロード）"""
    ref: Optional[str]
    sync_data: Optional[SyncData]


@dataclass
class LastSyncUserData(RemoteUserData):
    """最終同期スナップショット"""
    skipped_extensions: List[SyncExtension] = field(default_factory=list)


@dataclass
class MergeResult:
    """3-wayマージ結果"""
    added: List[SyncExtension]
    removed: List[ExtensionIdentifier]
    updated: List[SyncExtension]
    remote: Optional[List[SyncExtension]]

    @property
    def has_local_changed(self) -> bool:
        return bool(self.added or self.removed or self.updated)

    @property
    def has_remote_changed(self) -> bool:
        return self.remote is not None


@dataclass
class SyncPreview:
    """適用前のプレビュー"""
    merge: MergeResult
    remote_user_data: RemoteUserData
    last_sync_user_data: Optional[LastSyncUserData]
    local_extensions: List[SyncExtension]
    skipped_extensions: List[SyncExtension]
    is_last_sync_from_current_machine: bool = False
    force_remote_changed: bool = False

    @property
    def has_local_changed(self) -> bool:
        return self.merge.has_local_changed

    @property
    def has_remote_changed(self) -> bool:
        return self.force_remote_changed or self.merge.has_remote_changed


@dataclass
class SyncResult:
    """同期サイクル結果"""
    resource: SyncResource
    status: SyncStatus
    local_changed: bool = False
    remote_changed: bool = False
    skipped: int = 0
    error: Optional[Exception] = None
    sync_time: datetime = field(default_factory=datetime.now)

    @property
    def succeeded(self) -> bool:
        return self.error is None

    def summary(self) -> str:
        state = "ok" if self.succeeded else f"failed ({self.error})"
        return (f"{self.resource.label}: {state}, local_changed={self.local_changed}, "
                f"remote_changed={self.remote_changed}, skipped={self.skipped}")
