"""对话文档编解码器。

文档格式：

    ---
    model: gpt-4o
    temperature: 0
    ---

    ## user

    Hello

    ## assistant

    Hi there

- 可选的设置块：位于文档开头、由 ``---`` 包围的 YAML 映射。
- 之后是若干二级标题章节，标题文本（忽略大小写）通过角色标签表映射为
  system/user/assistant，章节正文即消息内容。标题文本不在角色标签表中的
  标题（任意级别）属于正文。

Markdown 结构使用 markdown-it-py 的 token 流（带源码行号）解析，
正文块保留原始 Markdown 文本；设置块使用 PyYAML 解码。
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

import yaml
from markdown_it import MarkdownIt

from docchat.config.settings import settings as default_settings
from docchat.domain.exceptions import ParseError
from docchat.domain.models import (
    ASSISTANT_ROLE,
    ROLES,
    SYSTEM_ROLE,
    USER_ROLE,
    Message,
    QuotedContext,
    Role,
    ToolInvocation,
)
from docchat.domain.schema import Schema

SETTINGS_FENCE = "---"
_KEY_PATTERN = re.compile(r"^(?P<key>[A-Za-z_][\w.-]*)\s*:")

_MARKDOWN: Optional[MarkdownIt] = None


def _markdown() -> MarkdownIt:
    global _MARKDOWN
    if _MARKDOWN is None:
        parser = MarkdownIt("commonmark")
        parser.enable("table")
        parser.enable("strikethrough")
        _MARKDOWN = parser
    return _MARKDOWN


@dataclass
class _Section:
    """一个二级标题章节；label 为 None 表示第一个标题之前的正文。"""

    label: Optional[str]
    start: int
    blocks: List[str] = field(default_factory=list)


@dataclass
class _Frontmatter:
    block: Optional[str]
    body: str
    body_offset: int
    start: int = -1
    end: int = -1
    unterminated: bool = False


def _normalize(text: str) -> str:
    return (text or "").lstrip("\ufeff").replace("\r\n", "\n").replace("\r", "\n")


def _split_frontmatter(text: str) -> _Frontmatter:
    """返回设置块与正文；body_offset 为正文在整篇文档中的起始行号。"""

    lines = text.split("\n")
    first = 0
    while first < len(lines) and not lines[first].strip():
        first += 1
    if first >= len(lines) or lines[first].strip() != SETTINGS_FENCE:
        return _Frontmatter(block=None, body=text, body_offset=0)

    for idx in range(first + 1, len(lines)):
        if lines[idx].strip() == SETTINGS_FENCE:
            block = "\n".join(lines[first + 1 : idx])
            body = "\n".join(lines[idx + 1 :])
            return _Frontmatter(block=block, body=body, body_offset=idx + 1, start=first, end=idx)
    return _Frontmatter(block=None, body=text, body_offset=0, unterminated=True)


def _trim_block(text: str) -> str:
    return text.strip("\n").rstrip()


def _content_lines(content: str) -> List[str]:
    lines = content.split("\n")
    while lines and not lines[0].strip():
        lines.pop(0)
    while lines and not lines[-1].strip():
        lines.pop()
    return lines


class DocumentCodec:
    """文档 <-> 消息日志 的双向转换。

    Args:
        role_labels: 角色 -> 标题文本，渲染时使用；解析时额外接受角色本名。
        show_settings: 渲染时是否输出设置块。
        suppress_context: 渲染时是否忽略外部引用内容。
    """

    def __init__(
        self,
        role_labels: Optional[Mapping[str, str]] = None,
        show_settings: bool = True,
        suppress_context: bool = False,
    ):
        labels: Dict[str, str] = {role: role for role in ROLES}
        labels.update(role_labels or {})
        self._role_labels = labels
        self._label_to_role: Dict[str, Role] = {role: role for role in ROLES}
        for role, label in labels.items():
            self._label_to_role[label.strip().lower()] = role  # type: ignore[assignment]
        self.show_settings = show_settings
        self.suppress_context = suppress_context

    @classmethod
    def from_config(cls, cfg=default_settings) -> "DocumentCodec":
        return cls(
            role_labels={
                USER_ROLE: getattr(cfg, "user_role_label", USER_ROLE),
                ASSISTANT_ROLE: getattr(cfg, "llm_role_label", ASSISTANT_ROLE),
                SYSTEM_ROLE: getattr(cfg, "system_role_label", SYSTEM_ROLE),
            },
            show_settings=getattr(cfg, "show_settings", True),
            suppress_context=getattr(cfg, "stop_context_insertion", False),
        )

    # ---- 设置块 ----

    def parse_settings(self, document: str) -> Dict[str, Any]:
        """解码文档开头的设置块；不存在时返回空字典。

        Raises:
            ParseError: 设置块未闭合、YAML 语法错误或不是映射。
        """

        front = _split_frontmatter(_normalize(document))
        if front.unterminated:
            raise ParseError(code="SETTINGS_UNTERMINATED", message="Settings block is not closed with '---'")
        if front.block is None:
            return {}
        try:
            data = yaml.safe_load(front.block)
        except yaml.YAMLError as e:
            raise ParseError(code="SETTINGS_PARSE_ERROR", message=f"Failed to parse settings: {e}")
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ParseError(code="SETTINGS_NOT_MAPPING", message="Settings block must be a key: value mapping")
        return {str(k): v for k, v in data.items()}

    def settings_key_lines(self, document: str) -> Dict[str, int]:
        """返回设置块中每个顶层 key 所在的行号（从 0 开始），用于逐行标注错误。"""

        text = _normalize(document)
        front = _split_frontmatter(text)
        if front.block is None:
            return {}
        lines = text.split("\n")
        result: Dict[str, int] = {}
        for lnum in range(front.start + 1, front.end):
            match = _KEY_PATTERN.match(lines[lnum])
            if match:
                result.setdefault(match.group("key"), lnum)
        return result

    def settings_key_at(self, document: str, line: int) -> Optional[str]:
        """返回某一行所属的设置 key；该行不在设置块内时返回 None。"""

        text = _normalize(document)
        front = _split_frontmatter(text)
        if front.block is None or not (front.start < line < front.end):
            return None
        lines = text.split("\n")
        for lnum in range(line, front.start, -1):
            match = _KEY_PATTERN.match(lines[lnum])
            if match:
                return match.group("key")
        return None

    # ---- 消息 ----

    def parse_last_message(self, document: str) -> Optional[Message]:
        """返回最后一个二级标题章节对应的消息；没有任何标题章节时返回 None。"""

        sections = [s for s in self._sections(document) if s.label is not None]
        if not sections:
            return None
        last = sections[-1]
        return Message.create(self._role_for(last.label), "\n\n".join(last.blocks))

    def parse_all_messages(self, document: str) -> List[Message]:
        """按标题切分整篇文档。

        - 第一个标题之前的正文归属 user；
        - 空章节被跳过；
        - 连续的同角色章节不会合并，每个标题都开始一条新消息。
        """

        messages: List[Message] = []
        for section in self._sections(document):
            if not section.blocks:
                continue
            role = USER_ROLE if section.label is None else self._role_for(section.label)
            messages.append(Message.create(role, "\n\n".join(section.blocks)))
        return messages

    def last_role(self, document: str) -> Optional[Role]:
        sections = [s for s in self._sections(document) if s.label is not None]
        if not sections:
            return None
        return self._role_for(sections[-1].label)

    def strip_last_section(self, document: str, role: Role) -> str:
        """若最后一个章节属于 role，则把它从文档中移除并返回新文本。"""

        text = _normalize(document)
        sections = [s for s in self._sections(text) if s.label is not None]
        if not sections or self._role_for(sections[-1].label) != role:
            return text
        lines = text.split("\n")
        return "\n".join(lines[: sections[-1].start]).rstrip()

    def find_tool_invocation(self, content: str, language: str) -> Optional[ToolInvocation]:
        """返回消息中最后一个以 language 标记的围栏代码块。"""

        found: Optional[ToolInvocation] = None
        for tok in _markdown().parse(_normalize(content)):
            if tok.type != "fence" or tok.level != 0:
                continue
            info = tok.info.strip().split()
            if info and info[0].lower() == language.lower():
                found = ToolInvocation(raw_block=tok.content.rstrip("\n"), language=language)
        return found

    # ---- 渲染 ----

    def heading(self, role: Role) -> str:
        return f"## {self._role_labels.get(role, role)}"

    def render(
        self,
        messages: Sequence[Message],
        settings: Mapping[str, Any],
        context: Optional[QuotedContext] = None,
        *,
        schema: Optional[Schema] = None,
    ) -> str:
        """把消息日志与设置序列化为文档文本（parse_* 的逆操作）。

        隐藏消息（包括默认不可见的 system 消息）不会被渲染；
        没有可见消息时只输出一个空的用户标题。
        """

        lines: List[str] = []
        if self.show_settings:
            lines.extend(self._settings_lines(settings, schema))
            lines.append("")

        visible = [m for m in messages if m.visible]
        if not visible:
            lines.append(self.heading(USER_ROLE))
            lines.append("")
        for idx, msg in enumerate(visible):
            if idx > 0:
                lines.append("")
            lines.append(self.heading(msg.role))
            lines.append("")
            lines.extend(_content_lines(msg.content))

        if context is not None and not self.suppress_context and context.text.strip():
            lines.append("")
            lines.append("```" + context.language)
            lines.extend(context.text.rstrip("\n").split("\n"))
            lines.append("```")

        return "\n".join(lines)

    def replace_settings(
        self,
        document: str,
        settings: Mapping[str, Any],
        *,
        schema: Optional[Schema] = None,
    ) -> str:
        """只替换（或插入、移除）文档开头的设置块，消息章节保持不变。"""

        text = _normalize(document)
        front = _split_frontmatter(text)
        body = front.body if front.block is not None else text
        body = body.lstrip("\n")
        if not self.show_settings:
            return body
        block = "\n".join(self._settings_lines(settings, schema))
        return f"{block}\n\n{body}" if body else f"{block}\n"

    # ---- 内部实现 ----

    def _settings_lines(self, settings: Mapping[str, Any], schema: Optional[Schema]) -> List[str]:
        # schema 中没有的 key 排在最后，保持原有顺序
        keys = schema.get_ordered_keys() if schema is not None else []
        keys += [k for k in settings if k not in keys]
        lines = [SETTINGS_FENCE]
        for key in keys:
            if key in settings:
                lines.extend(_encode_setting(key, settings[key]))
        lines.append(SETTINGS_FENCE)
        return lines

    def _role_for(self, label: str) -> Role:
        role = self._label_to_role.get(label.strip().lower())
        if role is None:
            raise ParseError(code="UNKNOWN_ROLE", message=f"Unknown role heading: {label!r}")
        return role

    def _sections(self, document: str) -> List[_Section]:
        text = _normalize(document)
        front = _split_frontmatter(text)
        body_lines = front.body.split("\n")
        tokens = _markdown().parse(front.body)

        sections: List[_Section] = []
        current = _Section(label=None, start=front.body_offset)
        idx = 0
        while idx < len(tokens):
            tok = tokens[idx]
            idx += 1
            if tok.level != 0 or tok.nesting == -1 or tok.map is None:
                continue
            if tok.type == "heading_open" and tok.markup == "##":
                label = tokens[idx].content.strip().lower() if idx < len(tokens) else ""
                if label in self._label_to_role:
                    if current.label is not None or current.blocks:
                        sections.append(current)
                    current = _Section(label=label, start=front.body_offset + tok.map[0])
                    continue
            # 其他标题（包括回复中的 "# Plan"、"## Summary"）都是正文
            block = _trim_block("\n".join(body_lines[tok.map[0] : tok.map[1]]))
            if block:
                current.blocks.append(block)

        if current.label is not None or current.blocks:
            sections.append(current)
        return sections


def _encode_setting(key: str, value: Any) -> List[str]:
    dumped = yaml.safe_dump({key: value}, default_flow_style=False, sort_keys=False, allow_unicode=True)
    return dumped.rstrip("\n").split("\n")
