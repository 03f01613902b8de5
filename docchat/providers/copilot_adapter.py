"""GitHub Copilot Chat 适配器。

Copilot Chat 的接口与 OpenAI Chat Completions 兼容，所以请求体与 SSE 解析
全部复用 OpenAIAdapter；差异只有：

1. 认证：OAuth token 从本机 Copilot 插件写入的 hosts.json / apps.json 读取，
   不走环境变量。
2. 请求头：需要带上 Copilot-Integration-Id 与 editor-version。
3. 不返回 token 统计。
"""

import json
from pathlib import Path
from typing import Any, Mapping, Optional

from docchat.config.settings import settings
from docchat.domain.schema import Schema, SchemaOption
from docchat.infrastructure.logging.logger import logger
from docchat.providers.openai_adapter import OPENAI_ROLES, OpenAIAdapter
from docchat.providers.registry import BackendCapabilities, Supports

EDITOR_VERSION = "docchat/0.1.0"

COPILOT_MODELS = ["gpt-4o-2024-05-13", "gpt-4", "gpt-3.5-turbo"]

COPILOT_SCHEMA = Schema(
    [
        SchemaOption(
            key="model",
            type="enum",
            order=1,
            default="gpt-4o-2024-05-13",
            choices=COPILOT_MODELS,
            description="ID of the model to use.",
        ),
        SchemaOption(
            key="temperature",
            type="number",
            order=2,
            default=0,
            description="What sampling temperature to use, between 0 and 2.",
        ),
        SchemaOption(
            key="max_tokens",
            type="integer",
            order=3,
            default=4096,
            description="The maximum number of tokens to generate in the chat completion.",
        ),
        SchemaOption(
            key="top_p",
            type="number",
            order=4,
            default=1,
            description="Nucleus sampling: only the tokens comprising the top_p probability mass are considered.",
        ),
        SchemaOption(
            key="n",
            type="integer",
            order=5,
            default=1,
            description="How many chat completions to generate for each prompt.",
        ),
    ]
)


def read_oauth_token(data: Mapping[str, Any]) -> Optional[str]:
    """从 Copilot 配置文件内容中取出 github.com 的 oauth_token。

    hosts.json 的 key 是 "github.com"，apps.json 的 key 形如 "github.com:<app id>"。
    """

    for host, entry in data.items():
        if host != "github.com" and not str(host).startswith("github.com:"):
            continue
        if isinstance(entry, dict) and entry.get("oauth_token"):
            return entry["oauth_token"]
    return None


class CopilotAdapter(OpenAIAdapter):
    capabilities = BackendCapabilities(
        name="copilot",
        roles=OPENAI_ROLES,
        schema=COPILOT_SCHEMA,
        base_url="https://api.githubcopilot.com",
        default_headers={
            "Content-Type": "application/json",
            "Copilot-Integration-Id": "vscode-chat",
            "editor-version": EDITOR_VERSION,
        },
        supports=Supports(streaming=True, token_accounting=False),
        role_policy="merge",
    )

    def __init__(self, cfg=settings):
        super().__init__(cfg)
        self._token: Optional[str] = None

    def setup(self) -> bool:
        """读取 token；找不到时返回 False，本次提交不会发起请求。"""

        if self._token:
            return True
        self._token = self._load_token()
        if not self._token:
            logger.error(
                "No GitHub Copilot token found",
                extra={"extra": {"adapter": self.name, "files": list(self._token_files())}},
            )
            return False
        return True

    def base_url(self) -> str:
        return getattr(self._settings, "copilot_base_url", None) or self.capabilities.base_url

    def api_key(self) -> Optional[str]:
        return self._token

    def _token_files(self):
        return getattr(self._settings, "copilot_token_files", None) or []

    def _load_token(self) -> Optional[str]:
        for name in self._token_files():
            path = Path(name).expanduser()
            if not path.is_file():
                continue
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as e:
                logger.error(
                    "Could not read Copilot token file",
                    extra={"extra": {"adapter": self.name, "path": str(path), "error": str(e)}},
                )
                continue
            if isinstance(data, dict):
                token = read_oauth_token(data)
                if token:
                    return token
        return None
