from agent_bridge.messages.store import ThreadMessageStore

__all__ = ["ThreadMessageStore"]
