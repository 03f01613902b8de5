"""会话层：状态机、流式客户端、会话注册表与生命周期事件。"""

from docchat.session.chat_session import ChatSession
from docchat.session.events import EventBus, SessionEvent, event_bus
from docchat.session.helpers import ToolRegistry, ToolSpec, VariableRegistry
from docchat.session.registry import SessionRegistry, session_registry
from docchat.session.stream_client import StreamClient, StreamRequest

__all__ = [
    "ChatSession",
    "EventBus",
    "SessionEvent",
    "SessionRegistry",
    "StreamClient",
    "StreamRequest",
    "ToolRegistry",
    "ToolSpec",
    "VariableRegistry",
    "event_bus",
    "session_registry",
]
