"""
リモートストア - 参照トークン（ETag相当）による楽観的排他制御付きの読み書き
read は条件付き取得、write は期待参照が一致しない場合に PreconditionFailed で失敗する
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import aiohttp

from ...core.errors import UserDataSyncError, UserDataSyncErrorCode, code_for_status

logger = logging.getLogger(__name__)

# 未書き込みリソースの参照
INITIAL_REF = "0"


@dataclass
class RemoteContent:
    """リモートの生コンテンツ"""
    ref: str
    content: Optional[str]
    not_modified: bool = False


class RemoteStore(ABC):
    """リモートストアのインターフェース"""

    @abstractmethod
    async def read(self, resource: str, ref: Optional[str] = None) -> RemoteContent:
        """最新コンテンツ取得（ref が最新と一致すれば not_modified の可能性あり）"""

    @abstractmethod
    async def write(self, resource: str, content: str, ref: Optional[str]) -> str:
        """書き込み（ref=None は無条件上書き）、新しい参照を返す"""

    async def stop(self) -> None:
        """進行中の要求の停止要求"""

    async def close(self) -> None:
        """接続の解放"""


class InMemoryRemoteStore(RemoteStore):
    """メモリ上のリモートストア（開発・テスト用）"""

    def __init__(self):
        self._data: Dict[str, Tuple[int, str]] = {}

    async def read(self, resource: str, ref: Optional[str] = None) -> RemoteContent:
        if resource not in self._data:
            return RemoteContent(ref=INITIAL_REF, content=None)
        version, content = self._data[resource]
        return RemoteContent(ref=str(version), content=content)

    async def write(self, resource: str, content: str, ref: Optional[str]) -> str:
        current_version = self._data[resource][0] if resource in self._data else 0
        if ref is not None and ref != str(current_version):
            raise UserDataSyncError(
                f"Remote {resource} changed (expected ref {ref}, current {current_version})",
                UserDataSyncErrorCode.PRECONDITION_FAILED,
                resource
            )

        new_version = current_version + 1
        self._data[resource] = (new_version, content)
        logger.debug(f"Remote {resource} written: ref {new_version}")
        return str(new_version)

    def current_ref(self, resource: str) -> str:
        return str(self._data[resource][0]) if resource in self._data else INITIAL_REF

    def content(self, resource: str) -> Optional[str]:
        return self._data[resource][1] if resource in self._data else None


def error_for_status(status: int, resource: str, message: str = "") -> Optional[UserDataSyncError]:
    """HTTPステータスを正規化済みエラーに変換（成功系は None）"""
    if status < 400:
        return None

    detail = message or f"Remote store returned {status}"
    return UserDataSyncError(detail, code_for_status(status), resource)


class HttpRemoteStore(RemoteStore):
    """HTTPリモートストア

    GET  {url}/v1/resource/{resource}/latest  (If-None-Match: ref)
    POST {url}/v1/resource/{resource}         (If-Match: ref)
    """

    SESSION_HEADER = "X-User-Session-Id"

    def __init__(self, url: str, token: str, timeout_seconds: float = 30.0):
        self.url = url.rstrip('/')
        self.token = token
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session: Optional[aiohttp.ClientSession] = None
        self._session_id: Optional[str] = None

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.token}",
            "Content-Type": "text/plain",
        }

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
        return self._session

    def _check_session(self, response: aiohttp.ClientResponse, resource: str) -> None:
        session_id = response.headers.get(self.SESSION_HEADER)
        if not session_id:
            return
        if self._session_id is None:
            self._session_id = session_id
        elif self._session_id != session_id:
            raise UserDataSyncError("Session expired", UserDataSyncErrorCode.SESSION_EXPIRED, resource)

    async def read(self, resource: str, ref: Optional[str] = None) -> RemoteContent:
        headers = self._headers()
        if ref:
            headers["If-None-Match"] = ref

        async with self._get_session().get(f"{self.url}/v1/resource/{resource}/latest",
                                           headers=headers) as response:
            self._check_session(response, resource)

            if response.status == 304:
                return RemoteContent(ref=ref, content=None, not_modified=True)

            error = error_for_status(response.status, resource, await response.text())
            if error:
                raise error

            new_ref = response.headers.get("ETag", INITIAL_REF)
            if response.status == 204:
                return RemoteContent(ref=new_ref, content=None)
            content = await response.text()
            return RemoteContent(ref=new_ref, content=content or None)

    async def write(self, resource: str, content: str, ref: Optional[str]) -> str:
        headers = self._headers()
        if ref:
            headers["If-Match"] = ref

        async with self._get_session().post(f"{self.url}/v1/resource/{resource}",
                                            data=content, headers=headers) as response:
            self._check_session(response, resource)

            error = error_for_status(response.status, resource, await response.text())
            if error:
                raise error

            new_ref = response.headers.get("ETag")
            if not new_ref:
                raise UserDataSyncError("Server did not return the ref", UserDataSyncErrorCode.UNKNOWN, resource)
            logger.debug(f"Remote {resource} written: ref {new_ref}")
            return new_ref

    async def stop(self) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None
