"""
エラーハンドリング - 同期サイクルのエラー正規化と分類
下位のあらゆる例外を閉じたエラーコード集合に正規化し、
コーディネーターの復旧アクション（リセット・無効化・バックオフ）を決定する
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

import aiohttp

logger = logging.getLogger(__name__)


class UserDataSyncErrorCode(Enum):
    """正規化済みエラーコード"""
    UNAUTHORIZED = "Unauthorized"
    SESSION_EXPIRED = "SessionExpired"
    TURNED_OFF = "TurnedOff"
    TOO_MANY_REQUESTS = "TooManyRequests"
    PRECONDITION_FAILED = "PreconditionFailed"
    INCOMPATIBLE = "Incompatible"
    NETWORK = "Network"
    LOCAL_ERROR = "LocalError"
    UNKNOWN = "Unknown"


class UserDataSyncError(Exception):
    """正規化済みの同期エラー"""

    def __init__(self, message: str, code: UserDataSyncErrorCode, resource: Optional[str] = None):
        super().__init__(message)
        self.code = code
        self.resource = resource

    def __str__(self) -> str:
        prefix = f"{self.resource}: " if self.resource else ""
        return f"{prefix}{self.args[0]} ({self.code.value})"


class LocalStateCorruptionError(Exception):
    """永続化されたローカル状態が読めない（致命的、サイクル外へ伝播する）"""


def code_for_status(status: int) -> UserDataSyncErrorCode:
    """リモートストアのHTTPエラーステータスをエラーコードに変換"""
    if status == 401:
        return UserDataSyncErrorCode.UNAUTHORIZED
    if status in (403, 410):
        return UserDataSyncErrorCode.TURNED_OFF
    if status == 412:
        return UserDataSyncErrorCode.PRECONDITION_FAILED
    if status == 429:
        return UserDataSyncErrorCode.TOO_MANY_REQUESTS
    if status >= 500:
        return UserDataSyncErrorCode.NETWORK
    return UserDataSyncErrorCode.UNKNOWN


class RecoveryAction(Enum):
    """コーディネーターの復旧アクション"""
    RESET_AND_DISABLE = "reset_and_disable"
    DISABLE = "disable"
    BACKOFF = "backoff"


@dataclass
class ErrorStrategy:
    """エラーコード別の対応戦略"""
    action: RecoveryAction
    log_level: int = logging.ERROR


class ErrorHandler:
    """エラー正規化・分類"""

    STRATEGIES: Dict[UserDataSyncErrorCode, ErrorStrategy] = {
        UserDataSyncErrorCode.TURNED_OFF: ErrorStrategy(
            action=RecoveryAction.RESET_AND_DISABLE,
            log_level=logging.INFO
        ),
        UserDataSyncErrorCode.SESSION_EXPIRED: ErrorStrategy(
            action=RecoveryAction.RESET_AND_DISABLE,
            log_level=logging.INFO
        ),
        UserDataSyncErrorCode.TOO_MANY_REQUESTS: ErrorStrategy(
            action=RecoveryAction.DISABLE,
            log_level=logging.WARNING
        ),
        UserDataSyncErrorCode.PRECONDITION_FAILED: ErrorStrategy(
            action=RecoveryAction.BACKOFF,
            log_level=logging.INFO
        ),
    }

    DEFAULT_STRATEGY = ErrorStrategy(action=RecoveryAction.BACKOFF)

    def __init__(self):
        self.error_counts: Dict[UserDataSyncErrorCode, int] = {}

    def normalize(self, error: BaseException, resource: Optional[str] = None) -> UserDataSyncError:
        """任意の例外を UserDataSyncError に変換"""
        if isinstance(error, UserDataSyncError):
            return error

        code = self._classify(error)
        return UserDataSyncError(str(error) or error.__class__.__name__, code, resource)

    def _classify(self, error: BaseException) -> UserDataSyncErrorCode:
        if isinstance(error, aiohttp.ClientResponseError):
            return code_for_status(error.status)

        if isinstance(error, (ConnectionError, asyncio.TimeoutError, aiohttp.ClientError)):
            return UserDataSyncErrorCode.NETWORK

        # ローカルのI/O失敗はメッセージに関係なくローカルエラー
        if isinstance(error, OSError):
            return UserDataSyncErrorCode.LOCAL_ERROR

        error_message = str(error).lower()

        # 認証エラー
        if 'unauthorized' in error_message:
            return UserDataSyncErrorCode.UNAUTHORIZED

        # セッション失効
        if 'session expired' in error_message:
            return UserDataSyncErrorCode.SESSION_EXPIRED

        # レート制限
        if 'too many requests' in error_message:
            return UserDataSyncErrorCode.TOO_MANY_REQUESTS

        # ネットワーク関連
        if any(keyword in error_message for keyword in ['connection', 'timeout', 'network']):
            return UserDataSyncErrorCode.NETWORK

        return UserDataSyncErrorCode.UNKNOWN

    def resolve(self, error: UserDataSyncError) -> RecoveryAction:
        """正規化済みエラーから復旧アクションを決定"""
        strategy = self.STRATEGIES.get(error.code, self.DEFAULT_STRATEGY)
        self.error_counts[error.code] = self.error_counts.get(error.code, 0) + 1

        logger.log(strategy.log_level, f"Error classified as {error.code.value}: {error}")
        logger.debug(f"Error count for {error.code.value}: {self.error_counts[error.code]}")

        return strategy.action

