"""文档缓冲区接口。

编辑器的窗口/缓冲区管理不在本包范围内，会话只通过 DocumentBuffer 协议读写
文档文本。InMemoryDocument 是默认实现，同时用于测试与无界面场景。
"""

import threading
from typing import Protocol

from docchat.domain.exceptions import BusinessError


class DocumentBuffer(Protocol):
    """会话所需的最小文档能力。

    - get_text/set_text/append: 会话在控制线程上读写文档。
    - lock/unlock: 流式输出期间禁止用户编辑。
    """

    def get_text(self) -> str:
        ...

    def set_text(self, text: str) -> None:
        ...

    def append(self, text: str) -> None:
        ...

    def lock(self) -> None:
        ...

    def unlock(self) -> None:
        ...


class InMemoryDocument:
    """基于字符串的文档缓冲区。"""

    def __init__(self, text: str = ""):
        self._text = text
        self._locked = False
        self._mutex = threading.Lock()

    @property
    def locked(self) -> bool:
        return self._locked

    def get_text(self) -> str:
        with self._mutex:
            return self._text

    def set_text(self, text: str) -> None:
        with self._mutex:
            self._text = text

    def append(self, text: str) -> None:
        with self._mutex:
            self._text += text

    def edit(self, text: str) -> None:
        """模拟用户编辑；文档被锁定时拒绝。"""

        if self._locked:
            raise BusinessError(code="DOCUMENT_LOCKED", message="Document is locked while a response is streaming")
        self.set_text(text)

    def lock(self) -> None:
        self._locked = True

    def unlock(self) -> None:
        self._locked = False
