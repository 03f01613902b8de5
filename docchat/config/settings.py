"""配置管理模块。

支持从 .env、config.yaml 以及环境变量加载配置。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_SYSTEM_PROMPT = (
    "You are an AI programming assistant. Follow the user's requirements "
    "carefully. Keep your answers short and impersonal. Use Markdown "
    "formatting and include the programming language name at the start of "
    "every fenced code block."
)

DEFAULT_TOOL_SYSTEM_PROMPT = (
    "You have access to tools. To use a tool, reply with a single fenced "
    "```xml code block containing an <agent> element that follows the schema "
    "of the tool. Only the last such block in your reply will be executed."
)


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("DOCCHAT_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([
        Path.cwd() / "config.yaml",
        Path(__file__).resolve().parents[2] / "config.yaml",
    ])

    seen: set[Path] = set()
    for path in candidates:
        if not path or path in seen:
            continue
        seen.add(path)
        try:
            if path.exists():
                data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
                if isinstance(data, dict):
                    return data
                warnings.warn(f"Config file {path} is not a mapping, ignored")
        except (OSError, yaml.YAMLError) as exc:
            warnings.warn(f"Failed to read config file {path}: {exc}")
    return {}


class DocChatSettings(BaseSettings):
    """配置设置（使用 Pydantic）。"""

    # ---- 后端适配器 ----
    default_adapter: str = Field(
        default="openai",
        description="默认使用的后端适配器名称，例如 openai、copilot、ollama",
    )

    # OpenAI
    openai_api_key: Optional[str] = Field(default=None, description="OpenAI API 密钥")
    openai_base_url: str = Field(
        default="https://api.openai.com/v1",
        description="OpenAI API 基础URL",
    )
    # GitHub Copilot
    copilot_token_files: List[str] = Field(
        default_factory=lambda: [
            "~/.config/github-copilot/hosts.json",
            "~/.config/github-copilot/apps.json",
        ],
        description="读取 Copilot OAuth token 的候选文件",
    )
    copilot_base_url: str = Field(
        default="https://api.githubcopilot.com",
        description="Copilot Chat API 基础URL",
    )
    # Ollama
    ollama_base_url: str = Field(
        default="http://localhost:11434",
        description="Ollama 服务地址",
    )

    http_timeout: float = Field(default=30.0, ge=1.0, description="HTTP 超时时间（秒）")
    http_proxy: Optional[str] = Field(default=None, description="HTTP(S) 代理地址，例如 http://127.0.0.1:7890")
    allow_insecure: bool = Field(default=False, description="是否跳过 TLS 证书校验")
    log_dir: str = Field(default="logs", description="日志目录")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")

    # ---- 文档显示 ----
    show_settings: bool = Field(default=True, description="是否在文档顶部显示设置块")
    show_token_count: bool = Field(default=True, description="是否在请求结束后记录 token 数")
    user_role_label: str = Field(default="user", description="用户消息的标题文本")
    llm_role_label: str = Field(default="assistant", description="模型回复的标题文本")
    system_role_label: str = Field(default="system", description="可见 system 消息的标题文本")
    stop_context_insertion: bool = Field(
        default=False,
        description="是否禁止把外部选中内容自动插入文档",
    )
    auto_user_heading: bool = Field(
        default=False,
        description="回复结束后是否自动追加一个空的用户标题",
    )

    # ---- 提示词与工具 ----
    system_prompt: Optional[str] = Field(
        default=DEFAULT_SYSTEM_PROMPT,
        description="隐藏的 system 提示词，为空时不插入",
    )
    tool_language: str = Field(default="xml", description="工具调用代码块的语言标记")
    tool_system_prompt: str = Field(
        default=DEFAULT_TOOL_SYSTEM_PROMPT,
        description="启用工具时追加的 system 提示词",
    )
    max_decode_errors: int = Field(
        default=8,
        ge=1,
        le=100,
        description="连续解码失败多少次后中止流式请求",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("openai_api_key")
    @classmethod
    def validate_api_key(cls, v: Optional[str]) -> Optional[str]:
        if v and len(v) < 10:
            raise ValueError("API key seems too short")
        return v

    @field_validator("user_role_label", "llm_role_label", "system_role_label")
    @classmethod
    def validate_role_label(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Role label must not be empty")
        return v

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            cls._config_source,
            file_secret_settings,
        )


settings = DocChatSettings()

# 类型别名，让外部代码可以使用 Settings 类型
Settings = DocChatSettings
