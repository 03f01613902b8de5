"""对话会话核心模块。

ChatSession 把一份对话文档、一条消息日志、一份设置和一个后端适配器绑在一起，
负责提交、流式写回、取消与重新生成。状态机：

    IDLE -> SUBMITTING -> STREAMING -> SETTLING -> IDLE
                               \\-> IDLE（取消或出错）

所有文档与日志的修改都发生在控制线程（调用 submit/pump 的线程）上；
网络读取在 StreamClient 的工作线程里完成，通过 pump() 把事件交回来。
"""

import logging
from dataclasses import asdict
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union
from uuid import uuid4

from docchat.config.settings import settings as default_settings
from docchat.document.buffer import DocumentBuffer, InMemoryDocument
from docchat.document.codec import DocumentCodec
from docchat.domain.exceptions import BusinessError, ParseError, SessionStateError, ValidationError
from docchat.domain.models import (
    ASSISTANT_ROLE,
    SYSTEM_ROLE,
    USER_ROLE,
    Message,
    NormalizedEvent,
    QuotedContext,
    Role,
    SessionState,
    TokenUsage,
    ToolInvocation,
)
from docchat.domain.validator import validate
from docchat.infrastructure.logging.logger import logger
from docchat.providers import create_adapter
from docchat.providers.base import ProtocolAdapter
from docchat.session.events import (
    DOCUMENT_CHANGED,
    REQUEST_FINISHED,
    REQUEST_STARTED,
    SESSION_ADAPTER_CHANGED,
    SESSION_CLOSED,
    TOOL_INVOCATION_DETECTED,
    EventBus,
    SessionEvent,
    event_bus,
)
from docchat.session.helpers import ToolRegistry, ToolSpec, VariableRegistry
from docchat.session.registry import SessionRegistry, session_registry
from docchat.session.stream_client import StreamClient, StreamRequest

SYSTEM_PROMPT_TAG = "system_prompt"
VARIABLE_TAG = "variable"
TOOL_TAG = "tool"

# parse_settings 失败时在 diagnostics 中使用的 key
SETTINGS_BLOCK_KEY = "<settings>"

ToolHandler = Callable[["ChatSession", ToolInvocation], None]


class ChatSession:
    """一份对话文档对应的会话。

    Args:
        adapter: 适配器实例或名称，None 时使用配置中的 default_adapter。
        document: 文档缓冲区，默认新建一个空的 InMemoryDocument。
        config: 配置对象（需要 system_prompt、角色标签等属性）。
        client: StreamClient，测试时可以替换。
        registry / events: 会话注册表与事件总线，默认使用进程级实例。
        variables / tools: ``#变量`` 与 ``@工具`` 注册表。
        context: 外部引用内容，首次渲染文档时追加在末尾。
        messages: 初始消息日志。
        settings_overrides: 覆盖 schema 默认值的设置。
        tool_handler: 检测到工具调用块时的回调（执行在外部完成）。
    """

    def __init__(
        self,
        adapter: Union[ProtocolAdapter, str, None] = None,
        document: Optional[DocumentBuffer] = None,
        *,
        session_id: Optional[str] = None,
        config=default_settings,
        client: Optional[StreamClient] = None,
        registry: Optional[SessionRegistry] = None,
        events: Optional[EventBus] = None,
        variables: Optional[VariableRegistry] = None,
        tools: Optional[ToolRegistry] = None,
        context: Optional[QuotedContext] = None,
        messages: Optional[Sequence[Message]] = None,
        settings_overrides: Optional[Mapping[str, Any]] = None,
        tool_handler: Optional[ToolHandler] = None,
    ):
        self.id = session_id or f"cs-{uuid4().hex[:12]}"
        self._settings = config
        self.adapter = self._resolve_adapter(adapter)
        self.document: DocumentBuffer = document if document is not None else InMemoryDocument()
        self.codec = DocumentCodec.from_config(config)
        self.client = client or StreamClient(config)
        self._registry = registry if registry is not None else session_registry
        self._events = events if events is not None else event_bus
        self.variables = variables or VariableRegistry()
        self.tools = tools or ToolRegistry()
        self.tool_handler = tool_handler
        self.context = context

        self.state = SessionState.IDLE
        self.messages: List[Message] = []
        self.settings: Dict[str, Any] = self.schema.get_default(settings_overrides, self.adapter)
        self.tools_in_use: Dict[str, ToolSpec] = {}
        self.diagnostics: Dict[str, str] = {}
        self.tokens = 0
        self.last_usage: Optional[TokenUsage] = None
        self.last_error: Optional[BusinessError] = None
        self.last_tool_invocation: Optional[ToolInvocation] = None
        self.closed = False

        self._request: Optional[StreamRequest] = None
        self._stream_role: Optional[Role] = None
        self._pending_role: Optional[Role] = None
        self._errored = False
        self._reply_parts: List[str] = []

        self._add_system_prompt()
        if messages:
            for msg in messages:
                self.messages.append(msg)
        elif self.document.get_text().strip():
            self._load_document()

        if not self.document.get_text().strip():
            self.document.set_text(self.render())

        self._registry.add(self)
        self._log(logging.INFO, "Session opened", self._log_ctx(), messages=len(self.messages))
        self._emit(SESSION_ADAPTER_CHANGED, adapter=self.adapter.capabilities.name)

    # ---- 基本属性 ----

    @property
    def schema(self):
        return self.adapter.capabilities.schema

    @property
    def busy(self) -> bool:
        return self.state != SessionState.IDLE

    def render(self) -> str:
        return self.codec.render(self.messages, self.settings, self.context, schema=self.schema)

    def add_message(
        self,
        role: Role,
        content: str,
        *,
        visible: bool = True,
        tags: Sequence[str] = (),
    ) -> Message:
        msg = Message.create(role, content, visible=visible, tags=tags)
        self.messages.append(msg)
        return msg

    def focus(self) -> None:
        self._registry.focus(self.id)

    # ---- 提交 ----

    def submit(self, regenerate: bool = False) -> StreamRequest:
        """把文档中最新的用户消息提交给后端。

        Raises:
            SessionStateError: 会话正在提交或流式输出中，不产生任何副作用。
            ParseError: 文档结构或设置块无法解析，或者没有可提交的用户消息。
            ValidationError: 设置未通过 schema 校验，errors 中为逐项错误。
            AdapterSetupError: 适配器前置检查失败（例如缺少凭证）。
        """

        if self.busy:
            raise SessionStateError(
                code="SESSION_BUSY",
                message=f"Session is {self.state.value}, cannot submit",
                session_id=self.id,
            )
        log_ctx = self._log_ctx()
        text = self.document.get_text()
        message = self.codec.parse_last_message(text)
        if message is None:
            # 没有任何标题时，整篇正文视为一条用户消息
            parsed = self.codec.parse_all_messages(text)
            message = parsed[-1] if parsed else None
        if message is None or not message.content.strip():
            raise ParseError(code="EMPTY_MESSAGE", message="No message to submit")
        if message.role != USER_ROLE:
            raise ParseError(code="NO_USER_MESSAGE", message="The last section is not a user message")

        doc_settings = self.codec.parse_settings(text)
        errors = validate(self.schema, doc_settings, self.adapter)
        self.diagnostics = errors
        if errors:
            self._log(logging.WARNING, "Settings validation failed", log_ctx, errors=errors)
            raise ValidationError(code="INVALID_SETTINGS", message="Invalid settings", errors=errors)

        snapshot = list(self.messages)
        tools_snapshot = dict(self.tools_in_use)
        self.settings = self.schema.get_default(self.schema.coerce(doc_settings), self.adapter)
        self.state = SessionState.SUBMITTING
        try:
            if not regenerate:
                self.add_message(USER_ROLE, message.content)
            self._expand_last_user_message()
            payload = self._messages_for_dispatch()
            self._stream_role = None
            self._pending_role = None
            self._errored = False
            self._reply_parts = []
            self.last_error = None
            self.document.lock()
            self._request = self.client.begin(self.adapter, self.settings, payload, self._on_chunk, self._on_done)
        except BusinessError as e:
            self.messages = snapshot
            self.tools_in_use = tools_snapshot
            self.document.unlock()
            self.state = SessionState.IDLE
            self._log(logging.ERROR, "Submit failed", log_ctx, code=e.code, error=e.message)
            raise

        self.state = SessionState.STREAMING
        self._log(
            logging.INFO,
            "Chat request started",
            log_ctx,
            request_id=self._request.id,
            regenerate=regenerate,
            messages=len(payload),
        )
        self._emit(REQUEST_STARTED, request_id=self._request.id, regenerate=regenerate)
        return self._request

    def cancel(self) -> bool:
        """取消进行中的请求；没有进行中的请求时返回 False。

        不等待连接真正关闭，会话立即回到 IDLE；已写入文档的部分回复保持原样，
        但不会进入消息日志。
        """

        request = self._request
        if not self.busy or request is None:
            return False
        self._request = None
        request.cancel()
        self.document.unlock()
        self.state = SessionState.IDLE
        self._log(logging.INFO, "Chat request cancelled", self._log_ctx(), request_id=request.id)
        self._emit(REQUEST_FINISHED, request_id=request.id, status="cancelled")
        return True

    def regenerate(self) -> StreamRequest:
        """丢弃最后一条 assistant 回复并重新提交。

        会话忙时先取消当前请求。重新提交失败时，消息日志与文档恢复为调用前的样子
        （已经发生的取消不会撤销）。
        """

        was_busy = self.busy
        if was_busy:
            self.cancel()
        last = self.messages[-1] if self.messages else None
        if (last is None or last.role != ASSISTANT_ROLE) and not was_busy:
            raise SessionStateError(code="NOTHING_TO_REGENERATE", message="The last message is not an assistant reply")

        messages_snapshot = list(self.messages)
        original = self.document.get_text()
        try:
            if last is not None and last.role == ASSISTANT_ROLE:
                self.messages.pop()
            text = original
            trailing = self.codec.parse_last_message(text)
            if trailing is not None and trailing.role == USER_ROLE and not trailing.content.strip():
                text = self.codec.strip_last_section(text, USER_ROLE)
            self.document.set_text(self.codec.strip_last_section(text, ASSISTANT_ROLE))
            self._emit(DOCUMENT_CHANGED, reason="regenerate")
            return self.submit(regenerate=True)
        except BusinessError as e:
            self.messages = messages_snapshot
            self.document.set_text(original)
            self._emit(DOCUMENT_CHANGED, reason="regenerate_failed")
            self._log(logging.WARNING, "Regenerate failed, restored transcript", self._log_ctx(), code=e.code)
            raise

    def close(self) -> None:
        if self.closed:
            return
        if self.busy:
            self.cancel()
        self._registry.remove(self.id)
        self.closed = True
        self._log(logging.INFO, "Session closed", self._log_ctx())
        self._emit(SESSION_CLOSED)
        self._emit(SESSION_ADAPTER_CHANGED, adapter=None)

    # ---- 事件循环 ----

    def pump(self, timeout: float = 0.0) -> int:
        """分发已到达的流式事件（必须在控制线程上调用）。"""

        return self.client.pump(timeout)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """阻塞地 pump，直到当前请求结束。"""

        request = self._request
        if request is None:
            return True
        return self.client.wait(request, timeout)

    def _on_chunk(self, request: StreamRequest, error: Optional[BusinessError], event: Optional[NormalizedEvent]) -> None:
        if request is not self._request:
            # 已取消或过期的请求
            return
        if error is not None:
            self._errored = True
            self.last_error = error
            self._log(logging.ERROR, "Chat request failed", self._log_ctx(), request_id=request.id, code=error.code, error=error.message)
            return
        if event is None:
            return
        if event.token_usage is not None:
            self._record_usage(event.token_usage)
        if event.role:
            self._pending_role = event.role
        if event.content_delta:
            role = event.role or self._pending_role or ASSISTANT_ROLE
            if role != self._stream_role:
                self._append_heading(role)
                self._stream_role = role
            self.document.append(event.content_delta)
            if role == ASSISTANT_ROLE:
                self._reply_parts.append(event.content_delta)
            self._emit(DOCUMENT_CHANGED, reason="delta", delta=event.content_delta)

    def _on_done(self, request: StreamRequest) -> None:
        if request is not self._request:
            return
        self._request = None
        self.document.unlock()
        log_ctx = self._log_ctx()
        if self._errored:
            self.state = SessionState.IDLE
            error = self.last_error
            self._emit(
                REQUEST_FINISHED,
                request_id=request.id,
                status="error",
                error=error.message if error else None,
                code=error.code if error else None,
            )
            return

        self.state = SessionState.SETTLING
        status = "success"
        try:
            reply = self._capture_reply()
            if reply is not None:
                self._detect_tool_invocation(reply)
            if getattr(self._settings, "auto_user_heading", False):
                self._append_heading(USER_ROLE)
                self._emit(DOCUMENT_CHANGED, reason="user_heading")
        finally:
            self.state = SessionState.IDLE

        if getattr(self._settings, "show_token_count", True) and self.last_usage is not None:
            self._log(logging.INFO, "Token usage", log_ctx, tokens=self.tokens, **asdict(self.last_usage))
        self._log(logging.INFO, "Chat request completed", log_ctx, request_id=request.id, status=status)
        self._emit(REQUEST_FINISHED, request_id=request.id, status=status, tokens=self.tokens)

    def _capture_reply(self) -> Optional[Message]:
        """优先读取文档中的最后一个 assistant 章节；读不到时使用流式收到的原文。"""

        if self._stream_role is None:
            return None
        streamed = "".join(self._reply_parts).strip()
        try:
            captured = self.codec.parse_last_message(self.document.get_text())
        except ParseError as e:
            self._log(logging.WARNING, "Falling back to streamed reply", self._log_ctx(), code=e.code)
            captured = None
        if captured is not None and captured.role == ASSISTANT_ROLE and captured.content.strip():
            content = captured.content
        else:
            content = streamed
        if not content:
            return None
        return self.add_message(ASSISTANT_ROLE, content)

    def _detect_tool_invocation(self, reply: Message) -> None:
        if not self.tools_in_use:
            return
        language = getattr(self._settings, "tool_language", "xml")
        invocation = self.codec.find_tool_invocation(reply.content, language)
        if invocation is None:
            return
        self.last_tool_invocation = invocation
        self._log(logging.INFO, "Tool invocation detected", self._log_ctx(), language=language)
        self._emit(TOOL_INVOCATION_DETECTED, raw_block=invocation.raw_block, language=language)
        if self.tool_handler is None:
            return
        try:
            self.tool_handler(self, invocation)
        except Exception:
            logger.exception("Tool handler failed", extra={"extra": self._log_ctx()})

    def _record_usage(self, usage: TokenUsage) -> None:
        self.last_usage = usage
        self.tokens += usage.total_tokens or (usage.prompt_tokens + usage.completion_tokens)

    def _append_heading(self, role: Role) -> None:
        text = self.document.get_text()
        prefix = ""
        if text.strip():
            trailing = len(text) - len(text.rstrip("\n"))
            prefix = "\n" * max(0, 2 - trailing)
        self.document.append(f"{prefix}{self.codec.heading(role)}\n\n")

    # ---- 变量与工具 ----

    def _expand_last_user_message(self) -> None:
        idx = self._last_index(USER_ROLE)
        if idx is None:
            return
        msg = self.messages[idx]
        content, expansions = self.variables.expand(msg.content, self)
        for spec in self.tools.parse(content):
            content = self.tools.replace(content, spec)
            self.tools_in_use[spec.name] = spec
        if content != msg.content:
            self.messages[idx] = msg.with_content(content)
        for value in expansions:
            self._add_once(SYSTEM_ROLE, value, (VARIABLE_TAG,))
        if self.tools_in_use:
            self._add_once(SYSTEM_ROLE, getattr(self._settings, "tool_system_prompt", ""), (TOOL_TAG,))
            for spec in self.tools_in_use.values():
                self._add_once(SYSTEM_ROLE, spec.system_prompt, (TOOL_TAG,))

    def _add_once(self, role: Role, content: str, tags: Sequence[str]) -> None:
        if not content:
            return
        candidate = Message.create(role, content, visible=False, tags=tags)
        if any(m.id == candidate.id for m in self.messages):
            return
        self.messages.append(candidate)

    def _last_index(self, role: Role) -> Optional[int]:
        for idx in range(len(self.messages) - 1, -1, -1):
            if self.messages[idx].role == role and self.messages[idx].visible:
                return idx
        return None

    def _messages_for_dispatch(self) -> List[Message]:
        """按适配器的 role_policy 处理连续同角色消息。"""

        policy = self.adapter.capabilities.role_policy
        if policy == "allow":
            return list(self.messages)
        result: List[Message] = []
        for msg in self.messages:
            prev = result[-1] if result else None
            if prev is None or prev.role != msg.role:
                result.append(msg)
                continue
            if policy == "reject":
                if msg.role == SYSTEM_ROLE:
                    result.append(msg)
                    continue
                raise ValidationError(
                    code="ROLE_ALTERNATION",
                    message=f"Backend {self.adapter.capabilities.name!r} requires alternating roles",
                    errors={},
                )
            result[-1] = Message.create(
                prev.role,
                f"{prev.content}\n\n{msg.content}",
                visible=prev.visible,
                tags=prev.tags | msg.tags,
            )
        return result

    # ---- 设置 ----

    def change_adapter(self, adapter: Union[ProtocolAdapter, str]) -> None:
        """切换后端，设置重置为新 schema 的默认值，文档中的设置块随之更新。"""

        self._ensure_idle("change adapter")
        self.adapter = self._resolve_adapter(adapter)
        self.settings = self.schema.get_default(None, self.adapter)
        self.diagnostics = {}
        self._rewrite_settings()
        self._log(logging.INFO, "Adapter changed", self._log_ctx())
        self._emit(SESSION_ADAPTER_CHANGED, adapter=self.adapter.capabilities.name)

    def apply_model(self, model: str) -> None:
        self.apply_settings({"model": model})

    def apply_settings(self, values: Mapping[str, Any]) -> None:
        """合并设置并写回文档；任何一项不合法时整体拒绝。"""

        self._ensure_idle("apply settings")
        merged = dict(self.settings)
        merged.update(values)
        errors = validate(self.schema, merged, self.adapter)
        if errors:
            raise ValidationError(code="INVALID_SETTINGS", message="Invalid settings", errors=errors)
        self.settings = self.schema.coerce(merged)
        self._rewrite_settings()

    def clear(self) -> None:
        """清空对话，只保留隐藏的 system 提示词。"""

        self._ensure_idle("clear")
        self.messages = []
        self.tools_in_use = {}
        self.tokens = 0
        self.last_usage = None
        self.last_tool_invocation = None
        self.diagnostics = {}
        self._add_system_prompt()
        self.document.set_text(self.render())
        self._emit(DOCUMENT_CHANGED, reason="clear")

    def validate_document(self) -> Dict[str, str]:
        """非阻塞地校验文档中的设置块，结果同时保存在 diagnostics 中。"""

        try:
            doc_settings = self.codec.parse_settings(self.document.get_text())
        except ParseError as e:
            self.diagnostics = {SETTINGS_BLOCK_KEY: e.message}
            return dict(self.diagnostics)
        self.diagnostics = validate(self.schema, doc_settings, self.adapter)
        return dict(self.diagnostics)

    def diagnostic_lines(self) -> Dict[int, str]:
        """把 diagnostics 映射到文档行号，供编辑器逐行标注。"""

        key_lines = self.codec.settings_key_lines(self.document.get_text())
        result: Dict[int, str] = {}
        for key, message in self.diagnostics.items():
            result[key_lines.get(key, 0)] = f"{key}: {message}"
        return result

    def describe_setting(self, line: int) -> Optional[str]:
        key = self.codec.settings_key_at(self.document.get_text(), line)
        opt = self.schema.get(key) if key else None
        if opt is None:
            return None
        description = opt.description
        choices = opt.resolve_choices(self.adapter)
        if choices:
            description = f"{description}\n\nChoices: {', '.join(str(c) for c in choices)}"
        return description

    def setting_choices(self, key: str) -> List[Any]:
        opt = self.schema.get(key)
        return opt.resolve_choices(self.adapter) if opt else []

    def debug(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "state": self.state.value,
            "adapter": self.adapter.capabilities.name,
            "settings": dict(self.settings),
            "messages": [
                {"id": m.id, "role": m.role, "content": m.content, "visible": m.visible, "tags": sorted(m.tags)}
                for m in self.messages
            ],
            "tools_in_use": sorted(self.tools_in_use),
            "tokens": self.tokens,
            "diagnostics": dict(self.diagnostics),
        }

    # ---- 内部实现 ----

    def _resolve_adapter(self, adapter: Union[ProtocolAdapter, str, None]) -> ProtocolAdapter:
        if adapter is None or isinstance(adapter, str):
            return create_adapter(adapter, cfg=self._settings)
        return adapter

    def _add_system_prompt(self) -> None:
        prompt = getattr(self._settings, "system_prompt", None)
        if prompt:
            self.add_message(SYSTEM_ROLE, prompt, visible=False, tags=(SYSTEM_PROMPT_TAG,))

    def _load_document(self) -> None:
        """从已有文档恢复消息日志与设置；末尾未提交的用户章节不进入日志。"""

        text = self.document.get_text()
        try:
            doc_settings = self.codec.parse_settings(text)
        except ParseError as e:
            self.diagnostics = {SETTINGS_BLOCK_KEY: e.message}
            doc_settings = {}
        if doc_settings and not validate(self.schema, doc_settings, self.adapter):
            self.settings = self.schema.get_default(self.schema.coerce(doc_settings), self.adapter)
        loaded = self.codec.parse_all_messages(text)
        if loaded and loaded[-1].role == USER_ROLE:
            loaded = loaded[:-1]
        self.messages.extend(loaded)

    def _rewrite_settings(self) -> None:
        text = self.document.get_text()
        self.document.set_text(self.codec.replace_settings(text, self.settings, schema=self.schema))
        self._emit(DOCUMENT_CHANGED, reason="settings")

    def _ensure_idle(self, action: str) -> None:
        if self.busy:
            raise SessionStateError(code="SESSION_BUSY", message=f"Cannot {action} while a request is in flight")

    def _log_ctx(self) -> Dict[str, Any]:
        return {"session_id": self.id, "adapter": self.adapter.capabilities.name}

    def _emit(self, event_type: str, **data: Any) -> None:
        self._events.emit(SessionEvent(type=event_type, session_id=self.id, data=data))

    @staticmethod
    def _log(level: int, message: str, log_ctx: Dict[str, Any], **fields: Any) -> None:
        payload = dict(log_ctx)
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})
