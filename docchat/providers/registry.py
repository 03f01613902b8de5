"""后端能力声明与适配器注册表。

每个后端适配器声明一份 BackendCapabilities：名称、角色词汇、设置 schema、
基础 URL、默认请求头以及支持的能力。会话创建时通过名称（不区分大小写）
从注册表中选出适配器类，新增后端只需实现适配器接口并注册。
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Mapping, Type

from docchat.domain.schema import Schema


RolePolicy = Literal["allow", "merge", "reject"]


@dataclass(frozen=True)
class Supports:
    """后端支持的能力。"""

    streaming: bool = True
    token_accounting: bool = False


@dataclass(frozen=True)
class BackendCapabilities:
    """某个后端的整体声明。

    - roles: 会话内部角色 -> 后端角色词汇。
    - role_policy: 连续同角色消息的处理策略（允许 / 合并 / 拒绝）。
    """

    name: str
    roles: Mapping[str, str]
    schema: Schema
    base_url: str
    default_headers: Mapping[str, str] = field(default_factory=dict)
    supports: Supports = field(default_factory=Supports)
    role_policy: RolePolicy = "allow"


ADAPTER_REGISTRY: Dict[str, Type[Any]] = {}


def register_adapter(name: str, adapter_cls: Type[Any]) -> None:
    """注册一个适配器类，名称统一转为小写。"""

    ADAPTER_REGISTRY[name.lower()] = adapter_cls


def get_adapter_class(name: str) -> Type[Any]:
    """根据名称获取适配器类，名称不区分大小写。"""

    key = name.lower()
    for k, cls in ADAPTER_REGISTRY.items():
        if k == key:
            return cls
    raise KeyError(f"Unknown adapter: {name!r}")


def list_adapters() -> List[str]:
    return sorted(ADAPTER_REGISTRY)
