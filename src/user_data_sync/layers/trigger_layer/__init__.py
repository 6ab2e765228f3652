"""
トリガー層 - 同期要求の合流・有効化状態の管理
自動同期サービスは trigger_layer.auto_sync_service から直接インポートする
"""

from .delayer import Delayer, compute_trigger_delay
from .enablement import AuthTokenService, UserDataSyncEnablementService

__all__ = [
    'Delayer', 'compute_trigger_delay',
    'UserDataSyncEnablementService', 'AuthTokenService'
]
