"""会话注册表。

进程内所有打开的会话按创建顺序登记在这里，关闭时移除。
编辑器集成层可以按 id 查找会话，或取最近获得焦点的会话。
"""

import logging
import threading
from typing import Any, Dict, List, Optional

from docchat.infrastructure.logging.logger import logger


class SessionRegistry:
    def __init__(self):
        self._sessions: Dict[str, Any] = {}
        self._last_focused: Optional[str] = None
        self._lock = threading.Lock()

    def add(self, session: Any) -> None:
        with self._lock:
            first = not self._sessions
            self._sessions[session.id] = session
            self._last_focused = session.id
        if first:
            logger.log(logging.DEBUG, "First session opened", extra={"extra": {"session_id": session.id}})

    def remove(self, session_id: str) -> None:
        with self._lock:
            self._sessions.pop(session_id, None)
            if self._last_focused == session_id:
                self._last_focused = next(reversed(self._sessions), None) if self._sessions else None
            empty = not self._sessions
        if empty:
            logger.log(logging.DEBUG, "Last session closed", extra={"extra": {"session_id": session_id}})

    def get(self, session_id: str) -> Optional[Any]:
        with self._lock:
            return self._sessions.get(session_id)

    def list(self) -> List[Any]:
        with self._lock:
            return list(self._sessions.values())

    def focus(self, session_id: str) -> None:
        with self._lock:
            if session_id in self._sessions:
                self._last_focused = session_id

    def last_focused(self) -> Optional[Any]:
        with self._lock:
            if self._last_focused is None:
                return None
            return self._sessions.get(self._last_focused)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)


session_registry = SessionRegistry()
