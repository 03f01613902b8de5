"""协议适配器抽象接口。

会话与 StreamClient 不直接依赖具体后端的 wire 格式，而是依赖此协议：

- 每个后端实现一个适配器（如 OpenAIAdapter、OllamaAdapter）。
- 负责：把 {settings, messages} 转成具体 HTTP 请求，并把流式返回的字节
  解析为统一的 NormalizedEvent。

这样新增后端（Anthropic、DeepSeek 等）时无需改动会话代码。
"""

import logging
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence

from docchat.config.settings import settings
from docchat.domain.exceptions import ProtocolDecodeError
from docchat.domain.models import AdapterRequest, Message, NormalizedEvent, Role, TokenUsage
from docchat.domain.schema import Schema
from docchat.infrastructure.logging.logger import logger
from docchat.providers.registry import BackendCapabilities


class ProtocolAdapter(Protocol):
    """后端适配器协议。

    实现者需要提供：
    - capabilities: 后端能力声明（名称、角色词汇、schema 等）。
    - setup(): 请求前的前置检查，返回 False 时不会发起网络请求。
    - build_request(settings, messages): 构造请求。
    - parse_chunk(raw_bytes): 解析一段（可能不完整的）流式字节。
    - flush(): 流结束时解析缓冲区中剩余的最后一个单元。
    - parse_final(full_response): 流结束后的 token 统计（可选）。
    - teardown(): 流结束后调用一次，无论成功与否。
    """

    capabilities: BackendCapabilities

    def setup(self) -> bool:
        ...

    def build_request(self, settings: Mapping[str, Any], messages: Sequence[Message]) -> AdapterRequest:
        ...

    def parse_chunk(self, raw_bytes: bytes) -> Optional[NormalizedEvent]:
        ...

    def flush(self) -> Optional[NormalizedEvent]:
        ...

    def parse_final(self, full_response: bytes) -> Optional[TokenUsage]:
        ...

    def teardown(self) -> None:
        ...


class LineProtocolAdapter:
    """按行分帧的后端（SSE、NDJSON）的公共实现。

    parse_chunk 把字节追加到内部缓冲区，每次最多返回一个完整单元对应的事件；
    用 b"" 再次调用可以取出同一批字节中剩余的单元。缓冲区中只有半行时返回 None，
    不会抛出异常。子类实现 endpoint() 与 parse_line()。
    """

    capabilities: BackendCapabilities

    def __init__(self, cfg=settings):
        # cfg 中包含 base_url、api_key、超时等配置
        self._settings = cfg
        self._buffer = b""

    @property
    def name(self) -> str:
        return self.capabilities.name

    @property
    def schema(self) -> Schema:
        return self.capabilities.schema

    # ---- 请求 ----

    def setup(self) -> bool:
        return True

    def endpoint(self) -> str:
        raise NotImplementedError

    def headers(self) -> Dict[str, str]:
        return dict(self.capabilities.default_headers)

    def map_roles(self, messages: Sequence[Message]) -> List[Dict[str, str]]:
        """把内部角色翻译为后端角色词汇。"""

        roles = self.capabilities.roles
        return [{"role": roles.get(m.role, m.role), "content": m.content} for m in messages]

    def role_from_backend(self, backend_role: Optional[str]) -> Optional[Role]:
        if not backend_role:
            return None
        for internal, external in self.capabilities.roles.items():
            if external == backend_role:
                return internal  # type: ignore[return-value]
        return None

    def form_parameters(self, settings: Mapping[str, Any]) -> Dict[str, Any]:
        """按 schema 的 mapping 把设置写入请求体。

        "parameters" 写在请求体顶层，"parameters.options" 写在 body["options"] 中。
        """

        body: Dict[str, Any] = {}
        for target, values in self.schema.map_to_params(settings).items():
            node = body
            for part in target.split(".")[1:]:
                node = node.setdefault(part, {})
            node.update(values)
        return body

    def form_messages(self, messages: Sequence[Message]) -> Dict[str, Any]:
        return {"messages": self.map_roles(messages)}

    def build_request(self, settings: Mapping[str, Any], messages: Sequence[Message]) -> AdapterRequest:
        self._buffer = b""
        body = self.form_parameters(settings)
        body.update(self.form_messages(messages))
        return AdapterRequest(url=self.endpoint(), headers=self.headers(), body=body)

    # ---- 响应 ----

    def parse_chunk(self, raw_bytes: bytes) -> Optional[NormalizedEvent]:
        self._buffer += raw_bytes
        while True:
            newline = self._buffer.find(b"\n")
            if newline < 0:
                return None
            line = self._buffer[:newline]
            self._buffer = self._buffer[newline + 1 :]
            event = self._decode_line(line)
            if event is not None:
                return event

    def flush(self) -> Optional[NormalizedEvent]:
        line, self._buffer = self._buffer, b""
        if not line.strip():
            return None
        return self._decode_line(line)

    def parse_line(self, line: str) -> Optional[NormalizedEvent]:
        raise NotImplementedError

    def parse_final(self, full_response: bytes) -> Optional[TokenUsage]:
        return None

    def teardown(self) -> None:
        if self._buffer.strip():
            logger.log(
                logging.DEBUG,
                "Discarding incomplete stream data",
                extra={"extra": {"adapter": self.name, "bytes": len(self._buffer)}},
            )
        self._buffer = b""

    def _decode_line(self, line: bytes) -> Optional[NormalizedEvent]:
        try:
            text = line.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ProtocolDecodeError(code="DECODE_ERROR", message=f"Invalid UTF-8 in stream: {e}")
        text = text.strip()
        if not text:
            return None
        return self.parse_line(text)


def usage_from_openai(usage_raw: Optional[Mapping[str, Any]]) -> Optional[TokenUsage]:
    if not isinstance(usage_raw, Mapping) or not usage_raw:
        return None
    return TokenUsage(
        prompt_tokens=usage_raw.get("prompt_tokens", 0) or 0,
        completion_tokens=usage_raw.get("completion_tokens", 0) or 0,
        total_tokens=usage_raw.get("total_tokens", 0) or 0,
    )


def http_client_options(cfg=settings) -> Dict[str, Any]:
    """构造 httpx.Client 的公共参数：超时、代理与 TLS 校验。"""

    options: Dict[str, Any] = {
        "timeout": getattr(cfg, "http_timeout", 30.0),
        "trust_env": False,
        "verify": not getattr(cfg, "allow_insecure", False),
    }
    proxy = getattr(cfg, "http_proxy", None)
    if proxy:
        options["proxy"] = proxy
    return options
