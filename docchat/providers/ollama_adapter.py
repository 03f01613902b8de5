"""Ollama 本地模型适配器。

- URL: {base_url}/api/chat
- 流式返回为逐行 JSON（NDJSON），每行形如
  {"message": {"role": "assistant", "content": "..."}, "done": false}
- 最后一行 done=true，携带 prompt_eval_count / eval_count，
  token 统计在流结束后由 parse_final 从完整响应中读取。
- 采样参数不在请求体顶层，而是放在 options 对象里。
"""

import json
from typing import Any, List, Optional

import httpx

from docchat.config.settings import settings
from docchat.domain.exceptions import ApiError, ProtocolDecodeError
from docchat.domain.models import NormalizedEvent, TokenUsage
from docchat.domain.schema import Schema, SchemaOption
from docchat.infrastructure.logging.logger import logger
from docchat.providers.base import LineProtocolAdapter, http_client_options
from docchat.providers.registry import BackendCapabilities, Supports

DEFAULT_OLLAMA_MODEL = "llama3"


def _model_choices(adapter: Any) -> List[str]:
    if adapter is None or not hasattr(adapter, "available_models"):
        return [DEFAULT_OLLAMA_MODEL]
    return adapter.available_models()


OLLAMA_SCHEMA = Schema(
    [
        SchemaOption(
            key="model",
            type="enum",
            order=1,
            default=DEFAULT_OLLAMA_MODEL,
            choices=_model_choices,
            description="Name of a model pulled into the local Ollama server.",
        ),
        SchemaOption(
            key="temperature",
            type="number",
            order=2,
            default=0.8,
            mapping="parameters.options",
            description="The temperature of the model. Increasing it makes answers more creative.",
        ),
        SchemaOption(
            key="top_p",
            type="number",
            order=3,
            default=0.9,
            mapping="parameters.options",
            description="Works together with top_k. Higher values lead to more diverse text.",
        ),
        SchemaOption(
            key="num_ctx",
            type="integer",
            order=4,
            default=2048,
            mapping="parameters.options",
            description="Size of the context window used to generate the next token.",
        ),
        SchemaOption(
            key="num_predict",
            type="integer",
            order=5,
            default=-1,
            mapping="parameters.options",
            description="Maximum number of tokens to predict, -1 means infinite generation.",
        ),
    ]
)


class OllamaAdapter(LineProtocolAdapter):
    """Ollama /api/chat 的流式适配器。"""

    capabilities = BackendCapabilities(
        name="ollama",
        roles={"system": "system", "user": "user", "assistant": "assistant"},
        schema=OLLAMA_SCHEMA,
        base_url="http://localhost:11434",
        default_headers={"Content-Type": "application/json"},
        supports=Supports(streaming=True, token_accounting=True),
    )

    def __init__(self, cfg=settings):
        super().__init__(cfg)
        self._models: Optional[List[str]] = None

    def base_url(self) -> str:
        return getattr(self._settings, "ollama_base_url", None) or self.capabilities.base_url

    def endpoint(self) -> str:
        return f"{self.base_url().rstrip('/')}/api/chat"

    def available_models(self, refresh: bool = False) -> List[str]:
        """查询本地已安装的模型列表（GET /api/tags），结果缓存在适配器上。

        服务不可用时缓存并返回默认模型，不抛异常；之后只有 refresh=True 才会重新请求。
        """

        if self._models is not None and not refresh:
            return self._models
        try:
            with httpx.Client(**http_client_options(self._settings)) as client:
                resp = client.get(f"{self.base_url().rstrip('/')}/api/tags")
            if resp.status_code >= 400:
                raise ApiError(code="API_ERROR", message=resp.text, http_status=resp.status_code)
            payload = resp.json()
            models = payload.get("models") if isinstance(payload, dict) else None
            names = [m.get("name") for m in (models or []) if isinstance(m, dict) and m.get("name")]
        except (httpx.HTTPError, ApiError, ValueError) as e:
            logger.warning(
                "Could not list Ollama models",
                extra={"extra": {"adapter": self.name, "error": str(e)}},
            )
            names = []
        self._models = names or [DEFAULT_OLLAMA_MODEL]
        return self._models

    def form_parameters(self, settings) -> dict:
        body = super().form_parameters(settings)
        body["stream"] = True
        return body

    def parse_line(self, line: str) -> Optional[NormalizedEvent]:
        data = self._load(line)
        if data.get("error"):
            raise ApiError(code="API_ERROR", message=str(data["error"]))
        message = data.get("message") or {}
        if not isinstance(message, dict):
            raise ProtocolDecodeError(code="DECODE_ERROR", message="Stream line 'message' is not a JSON object")
        content = message.get("content")
        if content is not None and not isinstance(content, str):
            raise ProtocolDecodeError(code="DECODE_ERROR", message="Stream line content is not a string")
        event = NormalizedEvent(role=self.role_from_backend(message.get("role")))
        if content:
            event.content_delta = content
        if data.get("done"):
            event.finished = True
        return event

    def parse_final(self, full_response: bytes) -> Optional[TokenUsage]:
        """从最后一个 done=true 的行中读取 token 统计。"""

        for raw in reversed(full_response.splitlines()):
            text = raw.decode("utf-8", errors="replace").strip()
            if not text:
                continue
            try:
                data = json.loads(text)
            except json.JSONDecodeError:
                continue
            if not isinstance(data, dict) or not data.get("done"):
                continue
            try:
                prompt = int(data.get("prompt_eval_count") or 0)
                completion = int(data.get("eval_count") or 0)
            except (TypeError, ValueError):
                logger.warning("Ignoring malformed Ollama token counts", extra={"extra": {"adapter": self.name}})
                return None
            return TokenUsage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=prompt + completion)
        return None

    @staticmethod
    def _load(line: str) -> dict:
        try:
            data = json.loads(line)
        except json.JSONDecodeError as e:
            raise ProtocolDecodeError(code="DECODE_ERROR", message=f"Malformed stream line: {e}", raw=line[:200])
        if not isinstance(data, dict):
            raise ProtocolDecodeError(code="DECODE_ERROR", message="Stream line is not a JSON object")
        return data
