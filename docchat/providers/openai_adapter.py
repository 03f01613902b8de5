"""OpenAI Chat Completions 适配器。

- URL: {base_url}/chat/completions
- 认证: Authorization: Bearer <api_key>
- 流式返回为 server-sent events：每个 ``data:`` 行是一个 JSON 增量，
  ``data: [DONE]`` 表示结束；开启 stream_options.include_usage 后最后一个
  增量携带 usage。

具体字段以官方文档为准，本实现只依赖公共字段：model/messages/temperature/max_tokens/top_p/stream。
"""

import json
from typing import Any, Dict, Optional

from docchat.config.settings import settings
from docchat.domain.exceptions import ApiError, ProtocolDecodeError
from docchat.domain.models import NormalizedEvent
from docchat.domain.schema import Schema, SchemaOption
from docchat.infrastructure.logging.logger import logger
from docchat.providers.base import LineProtocolAdapter, usage_from_openai
from docchat.providers.registry import BackendCapabilities, Supports

OPENAI_MODELS = ["gpt-4o", "gpt-4o-mini", "gpt-4-turbo", "gpt-3.5-turbo"]

OPENAI_ROLES = {"system": "system", "user": "user", "assistant": "assistant"}

OPENAI_SCHEMA = Schema(
    [
        SchemaOption(
            key="model",
            type="enum",
            order=1,
            default="gpt-4o",
            choices=OPENAI_MODELS,
            description="ID of the model to use.",
        ),
        SchemaOption(
            key="temperature",
            type="number",
            order=2,
            default=1,
            description=(
                "What sampling temperature to use, between 0 and 2. Higher values make the output "
                "more random, lower values make it more focused and deterministic."
            ),
        ),
        SchemaOption(
            key="top_p",
            type="number",
            order=3,
            default=1,
            description="Nucleus sampling: only the tokens comprising the top_p probability mass are considered.",
        ),
        SchemaOption(
            key="max_tokens",
            type="integer",
            order=4,
            default=4096,
            description="The maximum number of tokens to generate in the chat completion.",
        ),
        SchemaOption(
            key="presence_penalty",
            type="number",
            order=5,
            default=0,
            description="Positive values penalize tokens that already appeared, encouraging new topics.",
        ),
        SchemaOption(
            key="frequency_penalty",
            type="number",
            order=6,
            default=0,
            description="Positive values penalize tokens by their frequency so far, reducing repetition.",
        ),
    ]
)


class OpenAIAdapter(LineProtocolAdapter):
    """OpenAI 兼容后端的流式适配器。"""

    capabilities = BackendCapabilities(
        name="openai",
        roles=OPENAI_ROLES,
        schema=OPENAI_SCHEMA,
        base_url="https://api.openai.com/v1",
        default_headers={"Content-Type": "application/json"},
        supports=Supports(streaming=True, token_accounting=True),
    )

    def __init__(self, cfg=settings):
        super().__init__(cfg)

    def setup(self) -> bool:
        if not getattr(self._settings, "openai_api_key", None):
            logger.error("OPENAI_API_KEY not set", extra={"extra": {"adapter": self.name}})
            return False
        return True

    def base_url(self) -> str:
        return getattr(self._settings, "openai_base_url", None) or self.capabilities.base_url

    def endpoint(self) -> str:
        return f"{self.base_url().rstrip('/')}/chat/completions"

    def api_key(self) -> Optional[str]:
        return getattr(self._settings, "openai_api_key", None)

    def headers(self) -> Dict[str, str]:
        headers = super().headers()
        headers["Authorization"] = f"Bearer {self.api_key()}"
        return headers

    def form_parameters(self, settings) -> Dict[str, Any]:
        body = super().form_parameters(settings)
        body["stream"] = True
        if self.capabilities.supports.token_accounting:
            body["stream_options"] = {"include_usage": True}
        return body

    def parse_line(self, line: str) -> Optional[NormalizedEvent]:
        """解析一行 SSE。事件名、注释行返回 None。"""

        if line.startswith(":") or line.startswith("event:"):
            return None
        data_str = line[5:].strip() if line.startswith("data:") else line
        if not data_str:
            return None
        if data_str == "[DONE]":
            return NormalizedEvent(finished=True)
        try:
            data = json.loads(data_str)
        except json.JSONDecodeError as e:
            raise ProtocolDecodeError(code="DECODE_ERROR", message=f"Malformed stream chunk: {e}", raw=data_str[:200])
        if not isinstance(data, dict):
            raise ProtocolDecodeError(code="DECODE_ERROR", message="Stream chunk is not a JSON object")
        if data.get("error"):
            err = data["error"]
            message = err.get("message") if isinstance(err, dict) else str(err)
            raise ApiError(code="API_ERROR", message=message or "Backend reported an error")
        return self._parse_stream_chunk(data)

    def _parse_stream_chunk(self, data: Dict[str, Any]) -> NormalizedEvent:
        """解析流式响应中的单条增量（只关注 index=0 的候选）。"""

        event = NormalizedEvent(token_usage=usage_from_openai(data.get("usage")))
        choices = data.get("choices") or []
        if not isinstance(choices, list):
            raise ProtocolDecodeError(code="DECODE_ERROR", message="Stream chunk 'choices' is not a list")
        if choices:
            ch = choices[0]
            if not isinstance(ch, dict):
                raise ProtocolDecodeError(code="DECODE_ERROR", message="Stream chunk choice is not a JSON object")
            delta = ch.get("delta") or ch.get("message") or {}
            if not isinstance(delta, dict):
                raise ProtocolDecodeError(code="DECODE_ERROR", message="Stream chunk delta is not a JSON object")
            event.role = self.role_from_backend(delta.get("role"))
            content = delta.get("content")
            if content is not None and not isinstance(content, str):
                raise ProtocolDecodeError(code="DECODE_ERROR", message="Stream chunk content is not a string")
            if content:
                event.content_delta = content
            if ch.get("finish_reason"):
                event.finished = True
        return event
