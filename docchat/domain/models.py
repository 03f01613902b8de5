"""统一的消息与流式事件数据模型。

本模块定义了会话、文档编解码器与各后端适配器之间共享的标准数据结构：

- Message: 消息日志中的一条消息（system/user/assistant）。
- NormalizedEvent: 适配器从后端数据块解析出的统一事件。
- AdapterRequest: 适配器构造好的 HTTP 请求（url/headers/body）。

所有适配器都只依赖这些模型，并负责在各自的 wire 格式与这些模型之间做转换。
会话内部的角色永远是 system/user/assistant，与后端词汇无关。
"""

import hashlib
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, Literal, Optional


# 会话内部角色；后端角色词汇由适配器负责翻译
Role = Literal["system", "user", "assistant"]

SYSTEM_ROLE: Role = "system"
USER_ROLE: Role = "user"
ASSISTANT_ROLE: Role = "assistant"
ROLES = (SYSTEM_ROLE, USER_ROLE, ASSISTANT_ROLE)


def make_id(role: str, content: str) -> str:
    """计算消息指纹：role + content 的稳定哈希，用于去重与识别。"""

    digest = hashlib.sha256(f"{role}\x00{content}".encode("utf-8"))
    return digest.hexdigest()[:16]


@dataclass
class Message:
    """消息日志中的一条消息。

    - id: role+content 的指纹，内容被改写（变量/工具标记展开）后需重新计算。
    - visible: 是否渲染到文档中；隐藏的 system 消息只随请求发送。
    - tags: 附加标签（"variable"、"tool" 等），用于区分自动插入的消息。
    """

    role: Role
    content: str
    visible: bool = True
    tags: FrozenSet[str] = field(default_factory=frozenset)
    id: str = ""

    def __post_init__(self) -> None:
        if not self.id:
            self.id = make_id(self.role, self.content)

    @classmethod
    def create(
        cls,
        role: Role,
        content: str,
        visible: bool = True,
        tags: Iterable[str] = (),
    ) -> "Message":
        return cls(role=role, content=content, visible=visible, tags=frozenset(tags))

    def with_content(self, content: str) -> "Message":
        """返回内容被替换后的新消息，指纹随之更新。"""

        return Message(role=self.role, content=content, visible=self.visible, tags=self.tags)


@dataclass
class TokenUsage:
    """后端返回的 token 统计信息（统一格式）。"""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


@dataclass
class NormalizedEvent:
    """一次流式数据单元解析后的统一事件。"""

    content_delta: Optional[str] = None
    role: Optional[Role] = None
    finished: bool = False
    token_usage: Optional[TokenUsage] = None


@dataclass
class AdapterRequest:
    """适配器产出的后端请求。body 为可 JSON 序列化的字典。"""

    url: str
    headers: Dict[str, str]
    body: Dict[str, Any]


@dataclass
class ToolInvocation:
    """在最终回复中检测到的工具调用块，执行交给外部协作者。"""

    raw_block: str
    language: str = "xml"


@dataclass
class QuotedContext:
    """外部传入的引用内容（例如编辑器中的选区），渲染为围栏代码块。"""

    text: str
    language: str = ""


class SessionState(str, Enum):
    """ChatSession 生命周期状态。"""

    IDLE = "idle"
    SUBMITTING = "submitting"
    STREAMING = "streaming"
    SETTLING = "settling"
