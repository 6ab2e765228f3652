"""
同期の有効化状態と認証トークン
"""

import logging
from typing import Dict, Optional, Tuple

from ...core.events import Emitter
from ...core.models import ALL_SYNC_RESOURCES
from ..storage_layer.sync_storage import SyncStorage

logger = logging.getLogger(__name__)


class UserDataSyncEnablementService:
    """同期全体およびリソースごとの有効化フラグ（SyncStorage に永続化）"""

    ENABLEMENT_KEY = "sync.enable"
    RESOURCE_KEY_PREFIX = "sync.enable."

    def __init__(self, storage: SyncStorage, default_enabled: bool = False):
        self.storage = storage
        self.on_did_change_enablement: Emitter[bool] = Emitter()
        self.on_did_change_resource_enablement: Emitter[Tuple[str, bool]] = Emitter()

        self._enabled = default_enabled
        self._resources: Dict[str, bool] = {}

    async def load(self) -> None:
        """永続化済みフラグの読み込み"""
        value = await self.storage.get_state(self.ENABLEMENT_KEY)
        if value is not None:
            self._enabled = value == "true"

        for resource in ALL_SYNC_RESOURCES:
            value = await self.storage.get_state(self.RESOURCE_KEY_PREFIX + resource)
            if value is not None:
                self._resources[resource] = value == "true"

    def is_enabled(self) -> bool:
        return self._enabled

    async def set_enablement(self, enabled: bool) -> None:
        if self._enabled == enabled:
            return
        self._enabled = enabled
        await self.storage.set_state(self.ENABLEMENT_KEY, "true" if enabled else "false")
        logger.info(f"Sync {'enabled' if enabled else 'disabled'}")
        self.on_did_change_enablement.fire(enabled)

    def is_resource_enabled(self, resource: str) -> bool:
        return self._resources.get(resource, True)

    async def set_resource_enablement(self, resource: str, enabled: bool) -> None:
        if self.is_resource_enabled(resource) == enabled:
            return
        self._resources[resource] = enabled
        await self.storage.set_state(self.RESOURCE_KEY_PREFIX + resource, "true" if enabled else "false")
        logger.info(f"Sync of {resource} {'enabled' if enabled else 'disabled'}")
        self.on_did_change_resource_enablement.fire((resource, enabled))


class AuthTokenService:
    """認証トークンの保持と変更通知"""

    def __init__(self, token: Optional[str] = None):
        self._token = token
        self.on_did_change_token: Emitter[Optional[str]] = Emitter()

    @property
    def token(self) -> Optional[str]:
        return self._token

    def set_token(self, token: Optional[str]) -> None:
        if token == self._token:
            return
        self._token = token
        self.on_did_change_token.fire(token)
