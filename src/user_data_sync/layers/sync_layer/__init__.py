"""
同期層 - 3-wayマージとリソースごとのシンクロナイザー
"""

from .abstract_synchronizer import AbstractSynchronizer
from .extensions_merge import format_extensions, merge
from .extensions_sync import ExtensionsSynchronizer
from .sync_service import UserDataSyncService

__all__ = [
    'AbstractSynchronizer',
    'merge', 'format_extensions',
    'ExtensionsSynchronizer',
    'UserDataSyncService'
]
