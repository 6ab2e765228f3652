"""
拡張機能の3-wayマージエンジン
ローカル・リモート・最終同期スナップショットから差分を計算する純粋関数
"""

import json
from dataclasses import dataclass, replace
from typing import Dict, Iterable, List, Optional, Set

from ...core.models import ExtensionIdentifier, MergeResult, SyncExtension


@dataclass
class _Changes:
    added: Set[str]
    removed: Set[str]
    updated: Set[str]

    def is_empty(self) -> bool:
        return not (self.added or self.removed or self.updated)


def merge(local_extensions: List[SyncExtension],
          remote_extensions: Optional[List[SyncExtension]],
          last_sync_extensions: Optional[List[SyncExtension]],
          skipped_extensions: List[SyncExtension],
          ignored_extensions: List[str]) -> MergeResult:
    """3-wayマージ

    remote が None の場合（初回同期）は無視リスト外のローカル状態を
    そのままリモートに書き込む。ローカルとリモートが一致していれば
    remote=None（リモート書き込み不要）を返す。
    """
    added: List[SyncExtension] = []
    removed: List[ExtensionIdentifier] = []
    updated: List[SyncExtension] = []

    if remote_extensions is None:
        ignored = {extension_id.lower() for extension_id in ignored_extensions}
        remote = [e for e in local_extensions if e.identifier.id.lower() not in ignored]
        return MergeResult(added, removed, updated, remote)

    uuids: Dict[str, str] = {}
    for extension in [*local_extensions, *remote_extensions, *(last_sync_extensions or []), *skipped_extensions]:
        if extension.identifier.uuid:
            uuids[extension.identifier.id.lower()] = extension.identifier.uuid

    def get_key(identifier: ExtensionIdentifier) -> str:
        uuid = identifier.uuid or uuids.get(identifier.id.lower())
        return f"uuid:{uuid}" if uuid else f"id:{identifier.id.lower()}"

    def to_map(extensions: Iterable[SyncExtension]) -> Dict[str, SyncExtension]:
        return {get_key(e.identifier): e for e in extensions}

    local_map = to_map(local_extensions)
    remote_map = to_map(remote_extensions)
    last_sync_map = to_map(last_sync_extensions) if last_sync_extensions is not None else None
    skipped_map = to_map(skipped_extensions)
    ignored_keys = {get_key(ExtensionIdentifier(id=extension_id)) for extension_id in ignored_extensions}

    # 新しいリモート状態: ローカルでインストール済みならinstalledを維持
    new_remote_map: Dict[str, SyncExtension] = {}
    for key, extension in remote_map.items():
        local = local_map.get(key)
        new_remote_map[key] = replace(extension, installed=True) if local and local.installed else replace(extension)

    local_to_remote = compare(local_map, remote_map, ignored_keys)
    if local_to_remote.is_empty():
        # ローカルとリモートに差分なし
        return MergeResult([], [], [], None)

    base_to_local = compare(last_sync_map, local_map, ignored_keys)
    base_to_remote = compare(last_sync_map, remote_map, ignored_keys)

    # リモートで削除
    for key in base_to_remote.removed:
        local = local_map.get(key)
        if local:
            removed.append(local.identifier)

    # リモートで追加
    for key in base_to_remote.added:
        if key in base_to_local.added:
            # ローカルでも追加済み、内容が異なる場合のみ更新
            if key in local_to_remote.updated:
                updated.append(_massage_outgoing(remote_map[key], key))
        elif remote_map[key].installed:
            # インストール対象のみローカルに追加
            added.append(_massage_outgoing(remote_map[key], key))

    # リモートで更新（リモート優先）
    for key in base_to_remote.updated:
        updated.append(_massage_outgoing(remote_map[key], key))

    # ローカルで追加
    for key in base_to_local.added:
        if key not in base_to_remote.added:
            new_remote_map[key] = local_map[key]

    # ローカルで更新
    for key in base_to_local.updated:
        if key in base_to_remote.removed:
            continue
        if key not in base_to_remote.updated:
            extension = replace(local_map[key])
            existing = new_remote_map.get(key)
            if existing and existing.installed:
                extension.installed = True
            new_remote_map[key] = extension

    # ローカルで削除
    for key in base_to_local.removed:
        if key in skipped_map or key in base_to_remote.updated:
            continue
        last_sync = last_sync_map.get(key) if last_sync_map else None
        if last_sync and last_sync.installed:
            new_remote_map.pop(key, None)

    remote: Optional[List[SyncExtension]] = None
    remote_changes = compare(remote_map, new_remote_map, set(), check_installed=True)
    if not remote_changes.is_empty():
        remote = [_massage_outgoing(extension, key) for key, extension in new_remote_map.items()]

    return MergeResult(added, removed, updated, remote)


def compare(from_map: Optional[Dict[str, SyncExtension]],
            to_map: Dict[str, SyncExtension],
            ignored_keys: Set[str],
            check_installed: bool = False) -> _Changes:
    """2つのマップの差分（キー集合）"""
    from_keys = [key for key in from_map if key not in ignored_keys] if from_map is not None else []
    to_keys = [key for key in to_map if key not in ignored_keys]

    added = {key for key in to_keys if key not in from_keys}
    removed = {key for key in from_keys if key not in to_keys}
    updated: Set[str] = set()

    for key in from_keys:
        if key in removed:
            continue
        from_extension = from_map[key]
        to_extension = to_map.get(key)
        if (to_extension is None
                or from_extension.disabled != to_extension.disabled
                or from_extension.version != to_extension.version
                or (check_installed and from_extension.installed != to_extension.installed)):
            updated.add(key)

    return _Changes(added, removed, updated)


def _massage_outgoing(extension: SyncExtension, key: str) -> SyncExtension:
    uuid = key[len("uuid:"):] if key.startswith("uuid:") else None
    return SyncExtension(
        identifier=ExtensionIdentifier(id=extension.identifier.id, uuid=uuid),
        version=extension.version,
        disabled=extension.disabled,
        installed=extension.installed,
    )


def sort_extensions(extensions: Iterable[SyncExtension]) -> List[SyncExtension]:
    """UUIDのないものを先に、次にIDの辞書順"""
    return sorted(extensions, key=lambda e: (e.identifier.uuid is not None, e.identifier.id))


def format_extensions(extensions: Iterable[SyncExtension], pretty: bool = False) -> str:
    """正規化シリアライズ（全マシンで同一の出力）"""
    data = [extension.to_dict() for extension in sort_extensions(extensions)]
    if pretty:
        return json.dumps(data, indent=4)
    return json.dumps(data, separators=(",", ":"))


def parse_extensions(content: str) -> List[SyncExtension]:
    return [SyncExtension.from_dict(item) for item in json.loads(content)]
