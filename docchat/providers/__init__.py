"""后端适配器集成层。

该包下的模块负责：
- 定义适配器抽象接口 (base)。
- 维护后端能力声明与适配器注册表 (registry)。
- 提供各后端的具体实现（openai_adapter、copilot_adapter、ollama_adapter）。
"""

from typing import Optional

from docchat.config.settings import settings
from docchat.providers.base import LineProtocolAdapter, ProtocolAdapter
from docchat.providers.copilot_adapter import CopilotAdapter
from docchat.providers.ollama_adapter import OllamaAdapter
from docchat.providers.openai_adapter import OpenAIAdapter
from docchat.providers.registry import get_adapter_class, list_adapters, register_adapter

register_adapter("openai", OpenAIAdapter)
register_adapter("copilot", CopilotAdapter)
register_adapter("ollama", OllamaAdapter)


def create_adapter(name: Optional[str] = None, cfg=None) -> ProtocolAdapter:
    """根据名称创建适配器实例，默认取配置中的 default_adapter。

    Raises:
        KeyError: 名称未注册。
    """

    cfg = cfg if cfg is not None else settings
    adapter_name = (name or getattr(cfg, "default_adapter", "openai")).lower()
    return get_adapter_class(adapter_name)(cfg)


__all__ = [
    "CopilotAdapter",
    "LineProtocolAdapter",
    "OllamaAdapter",
    "OpenAIAdapter",
    "ProtocolAdapter",
    "create_adapter",
    "list_adapters",
    "register_adapter",
]
