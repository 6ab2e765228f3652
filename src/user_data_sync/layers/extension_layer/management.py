"""
拡張機能管理の外部コラボレーター（インターフェースのみ）
インストール・アンインストール・有効化・カタログ解決のプリミティブ
"""

from abc import ABC, abstractmethod
from typing import List, Optional

from ...core.events import Emitter
from ...core.models import ExtensionIdentifier, ExtensionType, GalleryExtension, LocalExtension


class ExtensionManagementService(ABC):
    """ローカル拡張機能の管理"""

    def __init__(self):
        # ギャラリーからのインストール完了・アンインストール成功
        self.on_did_install_extension: Emitter[LocalExtension] = Emitter()
        self.on_did_uninstall_extension: Emitter[ExtensionIdentifier] = Emitter()

    @abstractmethod
    async def get_installed(self, type: Optional[ExtensionType] = None) -> List[LocalExtension]:
        """インストール済み一覧（type 指定で絞り込み）"""

    @abstractmethod
    async def install_from_gallery(self, extension: GalleryExtension) -> LocalExtension:
        """ギャラリーからインストール"""

    @abstractmethod
    async def uninstall(self, extension: LocalExtension) -> None:
        """アンインストール"""


class ExtensionEnablementService(ABC):
    """グローバル有効・無効状態の管理"""

    def __init__(self):
        self.on_did_change_enablement: Emitter[List[ExtensionIdentifier]] = Emitter()

    @abstractmethod
    def get_disabled_extensions(self) -> List[ExtensionIdentifier]:
        """無効化されている拡張機能"""

    @abstractmethod
    async def enable_extension(self, identifier: ExtensionIdentifier) -> bool:
        """有効化"""

    @abstractmethod
    async def disable_extension(self, identifier: ExtensionIdentifier) -> bool:
        """無効化"""


class ExtensionGalleryService(ABC):
    """外部カタログ"""

    @abstractmethod
    def is_enabled(self) -> bool:
        """ギャラリーが利用可能か"""

    @abstractmethod
    async def get_compatible_extension(self, identifier: ExtensionIdentifier,
                                       version: Optional[str] = None) -> Optional[GalleryExtension]:
        """要求バージョンを解決（解決不能なら None）"""


def get_ignored_extensions(installed: List[LocalExtension], configured: List[str]) -> List[str]:
    """同期対象外の拡張機能ID

    マシン固有の拡張機能は既定で除外。設定値の "-<id>" は既定の除外を打ち消す。
    """
    default_ignored = [e.identifier.id for e in installed if e.machine_scoped]
    added: List[str] = []
    removed: List[str] = []
    for value in configured:
        if value.startswith("-"):
            removed.append(value[1:].lower())
        else:
            added.append(value)

    result: List[str] = []
    seen = set()
    for extension_id in [*default_ignored, *added]:
        key = extension_id.lower()
        if key in removed or key in seen:
            continue
        seen.add(key)
        result.append(extension_id)
    return result
