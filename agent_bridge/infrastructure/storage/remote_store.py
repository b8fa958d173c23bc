"""HTTP 远程消息存储。

端点（userId 对 GET/DELETE 以查询参数传递，对 POST/PUT 放在请求体中）：

- GET    {base}/threads                       → 线程元数据列表
- GET    {base}/threads/{id}                  → 消息列表
- POST   {base}/threads/{id}                  → 批量写入 {userId, messages}
- POST   {base}/threads/{id}/messages         → 追加单条消息
- PUT    {base}/threads/{id}/messages/{mid}   → 更新单条消息
- DELETE {base}/threads/{id}/messages/{mid}   → 删除单条消息
- POST   {base}/threads/{id}/meta             → 创建/更新线程元数据
- DELETE {base}/threads/{id}                  → 删除线程

任何网络错误或非 2xx 响应都抛出 PersistenceError。
"""

from typing import Any, Dict, List, Optional

import httpx

from agent_bridge.config.settings import settings
from agent_bridge.domain.conversation import Message, ThreadMeta
from agent_bridge.domain.exceptions import PersistenceError


class RemoteStorageAdapter:
    supports_thread_metadata = True

    def __init__(self, base_url: str, headers: Optional[Dict[str, str]] = None, timeout: Optional[float] = None):
        self._base_url = base_url.rstrip("/")
        self._headers = {"Content-Type": "application/json", **(headers or {})}
        self._timeout = timeout or settings.http_timeout

    async def list_threads(self, user_id: Optional[str] = None) -> List[ThreadMeta]:
        data = await self._request("GET", "/threads", params=self._user_params(user_id))
        return [ThreadMeta.from_dict(item) for item in _unwrap(data, "threads")]

    async def load_messages(self, user_id: Optional[str], thread_id: str) -> List[Message]:
        data = await self._request("GET", f"/threads/{thread_id}", params=self._user_params(user_id))
        return [Message.from_dict(item) for item in _unwrap(data, "messages")]

    async def persist_messages(self, user_id: Optional[str], thread_id: str, messages: List[Message]) -> None:
        await self._request(
            "POST",
            f"/threads/{thread_id}",
            json={"userId": user_id, "messages": [m.to_dict() for m in messages]},
        )

    async def persist_message(self, user_id: Optional[str], thread_id: str, message: Message) -> Message:
        data = await self._request(
            "POST",
            f"/threads/{thread_id}/messages",
            json={"userId": user_id, "message": message.to_dict()},
        )
        return Message.from_dict(data) if isinstance(data, dict) and "id" in data else message

    async def update_message(self, user_id: Optional[str], thread_id: str, message: Message) -> Message:
        data = await self._request(
            "PUT",
            f"/threads/{thread_id}/messages/{message.id}",
            json={"userId": user_id, "message": message.to_dict()},
        )
        return Message.from_dict(data) if isinstance(data, dict) and "id" in data else message

    async def delete_message(self, user_id: Optional[str], thread_id: str, message_id: str) -> Optional[Message]:
        data = await self._request(
            "DELETE",
            f"/threads/{thread_id}/messages/{message_id}",
            params=self._user_params(user_id),
        )
        return Message.from_dict(data) if isinstance(data, dict) and "id" in data else None

    async def create_thread(self, user_id: Optional[str], thread_id: str, meta: ThreadMeta) -> ThreadMeta:
        return await self._post_meta(user_id, thread_id, meta)

    async def update_thread(self, user_id: Optional[str], thread_id: str, meta: ThreadMeta) -> ThreadMeta:
        return await self._post_meta(user_id, thread_id, meta)

    async def delete_thread(self, user_id: Optional[str], thread_id: str) -> Optional[ThreadMeta]:
        data = await self._request("DELETE", f"/threads/{thread_id}", params=self._user_params(user_id))
        return ThreadMeta.from_dict(data) if isinstance(data, dict) and "id" in data else None

    # ---- 辅助方法 ----

    async def _post_meta(self, user_id: Optional[str], thread_id: str, meta: ThreadMeta) -> ThreadMeta:
        data = await self._request(
            "POST",
            f"/threads/{thread_id}/meta",
            json={"userId": user_id, **meta.to_dict()},
        )
        return ThreadMeta.from_dict(data) if isinstance(data, dict) and "id" in data else meta

    @staticmethod
    def _user_params(user_id: Optional[str]) -> Dict[str, str]:
        return {"userId": user_id} if user_id else {}

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        url = f"{self._base_url}{path}"
        try:
            async with httpx.AsyncClient(timeout=self._timeout, trust_env=False) as client:
                resp = await client.request(method, url, headers=self._headers, **kwargs)
        except httpx.RequestError as e:
            raise PersistenceError(code="STORE_NETWORK_ERROR", message=str(e), url=url) from e
        if resp.status_code >= 400:
            raise PersistenceError(
                code="STORE_HTTP_ERROR",
                message=f"{method} {path} failed: {resp.status_code}",
                http_status=resp.status_code,
                url=url,
            )
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError:
            return None


def _unwrap(data: Any, field: str) -> List[Dict[str, Any]]:
    """兼容直接返回列表或 {field: [...]} 两种响应。"""

    if isinstance(data, dict):
        data = data.get(field)
    return data if isinstance(data, list) else []
