"""
拡張機能層 - 拡張機能の管理・有効化・カタログ
"""

from .management import (ExtensionEnablementService, ExtensionGalleryService, ExtensionManagementService,
                         get_ignored_extensions)
from .local_registry import LocalExtensionRegistry

__all__ = [
    'ExtensionManagementService', 'ExtensionEnablementService', 'ExtensionGalleryService',
    'get_ignored_extensions',
    'LocalExtensionRegistry'
]
