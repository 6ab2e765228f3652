"""
ローカル拡張機能レジストリ
メモリ上（任意でJSONファイルに永続化）の管理・有効化・カタログ実装
開発用バックエンドおよびテスト用に使用する
"""

import json
import logging
from pathlib import Path
from typing import Dict, List, Optional, Union

from ...core.models import ExtensionIdentifier, ExtensionType, GalleryExtension, LocalExtension, are_same_extensions
from .management import ExtensionEnablementService, ExtensionGalleryService, ExtensionManagementService

logger = logging.getLogger(__name__)


class LocalExtensionRegistry(ExtensionManagementService, ExtensionEnablementService, ExtensionGalleryService):
    """拡張機能レジストリ"""

    def __init__(self, path: Optional[Union[str, Path]] = None, gallery_enabled: bool = True):
        ExtensionManagementService.__init__(self)
        ExtensionEnablementService.__init__(self)

        self.path = Path(path) if path else None
        self.gallery_enabled = gallery_enabled

        self.installed: Dict[str, LocalExtension] = {}
        self.disabled: List[ExtensionIdentifier] = []
        self.catalog: Dict[str, List[str]] = {}

        if self.path and self.path.exists():
            self._load()

    # ---- 管理 -------------------------------------------------------------
    def add_installed(self, extension: LocalExtension) -> None:
        self.installed[extension.identifier.id.lower()] = extension

    def publish(self, identifier: ExtensionIdentifier, *versions: str) -> None:
        """カタログにバージョンを登録"""
        self.catalog.setdefault(identifier.id.lower(), []).extend(versions)

    async def get_installed(self, type: Optional[ExtensionType] = None) -> List[LocalExtension]:
        return [e for e in self.installed.values() if type is None or e.type == type]

    async def install_from_gallery(self, extension: GalleryExtension) -> LocalExtension:
        local = LocalExtension(identifier=extension.identifier, type=ExtensionType.USER, version=extension.version)
        self.installed[extension.identifier.id.lower()] = local
        self._save()
        logger.debug(f"Installed {extension.identifier.id}@{extension.version}")
        self.on_did_install_extension.fire(local)
        return local

    async def uninstall(self, extension: LocalExtension) -> None:
        if self.installed.pop(extension.identifier.id.lower(), None) is None:
            raise KeyError(f"Extension is not installed: {extension.identifier.id}")
        self._save()
        logger.debug(f"Uninstalled {extension.identifier.id}")
        self.on_did_uninstall_extension.fire(extension.identifier)

    # ---- 有効化 -----------------------------------------------------------
    def get_disabled_extensions(self) -> List[ExtensionIdentifier]:
        return list(self.disabled)

    async def enable_extension(self, identifier: ExtensionIdentifier) -> bool:
        before = len(self.disabled)
        self.disabled = [d for d in self.disabled if not are_same_extensions(d, identifier)]
        changed = len(self.disabled) != before
        if changed:
            self._save()
            self.on_did_change_enablement.fire([identifier])
        return changed

    async def disable_extension(self, identifier: ExtensionIdentifier) -> bool:
        if any(are_same_extensions(d, identifier) for d in self.disabled):
            return False
        self.disabled.append(identifier)
        self._save()
        self.on_did_change_enablement.fire([identifier])
        return True

    # ---- カタログ ---------------------------------------------------------
    def is_enabled(self) -> bool:
        return self.gallery_enabled

    async def get_compatible_extension(self, identifier: ExtensionIdentifier,
                                       version: Optional[str] = None) -> Optional[GalleryExtension]:
        versions = self.catalog.get(identifier.id.lower())
        if not versions:
            return None
        if version is None:
            return GalleryExtension(identifier=identifier, version=versions[-1])
        if version in versions:
            return GalleryExtension(identifier=identifier, version=version)
        return None

    # ---- 永続化 -----------------------------------------------------------
    def _load(self) -> None:
        with open(self.path, 'r', encoding='utf-8') as f:
            data = json.load(f)

        for item in data.get("installed", []):
            self.add_installed(LocalExtension(
                identifier=ExtensionIdentifier(id=item["id"], uuid=item.get("uuid")),
                type=ExtensionType(item.get("type", "user")),
                version=item.get("version", "0.0.0"),
                machine_scoped=bool(item.get("machineScoped", False)),
            ))
        self.disabled = [ExtensionIdentifier.from_dict(item) for item in data.get("disabled", [])]
        self.catalog = {key.lower(): list(versions) for key, versions in data.get("catalog", {}).items()}
        logger.debug(f"Loaded extension registry: {self.path} ({len(self.installed)} installed)")

    def _save(self) -> None:
        if not self.path:
            return

        data = {
            "installed": [
                {
                    **e.identifier.to_dict(),
                    "type": e.type.value,
                    "version": e.version,
                    "machineScoped": e.machine_scoped,
                }
                for e in self.installed.values()
            ],
            "disabled": [d.to_dict() for d in self.disabled],
            "catalog": self.catalog,
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self.path.parent / f".{self.path.name}.tmp"
        with open(temp_path, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2)
        temp_path.replace(self.path)
