from typing import List, Optional

from agent_bridge.domain.conversation import Message, ThreadMeta


class NoopStorageAdapter:
    """不持久化：列出与加载都为空，写入原样返回。"""

    supports_thread_metadata = False

    async def list_threads(self, user_id: Optional[str] = None) -> List[ThreadMeta]:
        return []

    async def load_messages(self, user_id: Optional[str], thread_id: str) -> List[Message]:
        return []

    async def persist_message(self, user_id: Optional[str], thread_id: str, message: Message) -> Message:
        return message

    async def persist_messages(self, user_id: Optional[str], thread_id: str, messages: List[Message]) -> None:
        return None

    async def update_message(self, user_id: Optional[str], thread_id: str, message: Message) -> Message:
        return message

    async def delete_message(self, user_id: Optional[str], thread_id: str, message_id: str) -> Optional[Message]:
        return None
