"""会话生命周期事件。

编辑器集成层（状态栏、通知、工具执行器等）通过 EventBus.on 订阅事件。
事件在控制线程上同步分发，处理函数的异常只记录日志，不会影响会话或其他
处理函数。
"""

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List

from docchat.infrastructure.logging.logger import logger

SESSION_ADAPTER_CHANGED = "SessionAdapterChanged"
REQUEST_STARTED = "RequestStarted"
REQUEST_FINISHED = "RequestFinished"
SESSION_CLOSED = "SessionClosed"
DOCUMENT_CHANGED = "DocumentChanged"
TOOL_INVOCATION_DETECTED = "ToolInvocationDetected"

# "*" 订阅全部事件
ANY_EVENT = "*"


@dataclass
class SessionEvent:
    type: str
    session_id: str
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


EventHandler = Callable[[SessionEvent], None]


class EventBus:
    """进程内同步事件总线。"""

    def __init__(self):
        self._handlers: Dict[str, List[EventHandler]] = defaultdict(list)

    def on(self, event_type: str, handler: EventHandler) -> None:
        """注册处理函数，同一事件可以注册多个。"""

        self._handlers[event_type].append(handler)

    def off(self, event_type: str, handler: EventHandler) -> None:
        handlers = self._handlers.get(event_type) or []
        if handler in handlers:
            handlers.remove(handler)

    def emit(self, event: SessionEvent) -> None:
        for handler in list(self._handlers.get(event.type, [])) + list(self._handlers.get(ANY_EVENT, [])):
            try:
                handler(event)
            except Exception:
                logger.exception(
                    "Event handler failed",
                    extra={"extra": {"event": event.type, "session_id": event.session_id}},
                )


# 进程级默认总线，测试或多实例场景可以显式传入自己的 EventBus
event_bus = EventBus()
