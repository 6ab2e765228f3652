"""
ストレージ層 - リモートストアとローカル同期状態の永続化
"""

from .remote_store import HttpRemoteStore, InMemoryRemoteStore, RemoteContent, RemoteStore
from .sync_storage import BackupEntry, SyncStorage

__all__ = [
    'RemoteStore', 'RemoteContent',
    'InMemoryRemoteStore', 'HttpRemoteStore',
    'SyncStorage', 'BackupEntry'
]
