"""变量与工具标记。

用户消息中可以出现两类标记：

- ``#name``：变量引用。提交时由注册的解析函数展开成一段文本，作为隐藏的
  system 消息（tag="variable"）随请求发送，原消息中的标记被移除。
- ``@name``：工具标记。表示本轮对话启用该工具，会话追加工具 system 提示词
  （tag="tool"），回复结束后检测工具调用块。

具体变量内容（当前缓冲区、选区、诊断信息等）由编辑器集成层注册。
"""

import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from docchat.infrastructure.logging.logger import logger

VARIABLE_PATTERN = re.compile(r"(?<![\w#])#([A-Za-z_][\w-]*)")
TOOL_PATTERN = re.compile(r"(?<![\w@])@([A-Za-z_][\w-]*)")

VariableResolver = Callable[[Any], Optional[str]]


def _strip_marker(content: str, prefix: str, name: str) -> str:
    marker = re.compile(rf"(?<![\w{re.escape(prefix)}]){re.escape(prefix)}{re.escape(name)}(?![\w-])[ \t]?")
    return marker.sub("", content).strip()


@dataclass(frozen=True)
class VariableSpec:
    name: str
    resolver: VariableResolver
    description: str = ""


class VariableRegistry:
    """``#name`` 变量解析函数的注册表。"""

    def __init__(self):
        self._variables: Dict[str, VariableSpec] = {}

    def register(self, name: str, resolver: VariableResolver, description: str = "") -> None:
        self._variables[name] = VariableSpec(name=name, resolver=resolver, description=description)

    def names(self) -> List[str]:
        return sorted(self._variables)

    def get(self, name: str) -> Optional[VariableSpec]:
        return self._variables.get(name)

    def parse(self, content: str) -> List[str]:
        """按出现顺序返回内容中已注册的变量名（去重）。"""

        found: List[str] = []
        for match in VARIABLE_PATTERN.finditer(content):
            name = match.group(1)
            if name in self._variables and name not in found:
                found.append(name)
        return found

    def expand(self, content: str, context: Any = None) -> Tuple[str, List[str]]:
        """展开内容中的变量。

        Returns:
            (移除标记后的内容, 每个变量解析出的文本列表)
        """

        expansions: List[str] = []
        for name in self.parse(content):
            value = self._variables[name].resolver(context)
            content = _strip_marker(content, "#", name)
            if value:
                expansions.append(value)
            else:
                logger.warning("Variable resolved to nothing", extra={"extra": {"variable": name}})
        return content, expansions


@dataclass(frozen=True)
class ToolSpec:
    """可在对话中启用的工具；执行由外部协作者负责。"""

    name: str
    description: str = ""
    system_prompt: str = ""


class ToolRegistry:
    """``@name`` 工具标记的注册表。"""

    def __init__(self):
        self._tools: Dict[str, ToolSpec] = {}

    def register(self, spec: ToolSpec) -> None:
        self._tools[spec.name] = spec

    def names(self) -> List[str]:
        return sorted(self._tools)

    def get(self, name: str) -> Optional[ToolSpec]:
        return self._tools.get(name)

    def parse(self, content: str) -> List[ToolSpec]:
        found: List[ToolSpec] = []
        for match in TOOL_PATTERN.finditer(content):
            spec = self._tools.get(match.group(1))
            if spec is not None and spec not in found:
                found.append(spec)
        return found

    def replace(self, content: str, spec: ToolSpec) -> str:
        return _strip_marker(content, "@", spec.name)
