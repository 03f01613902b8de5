"""后端设置 schema。

每个适配器声明一份 Schema：若干带类型的设置项，决定了文档顶部设置块里
允许出现哪些 key、默认值是什么、序列化顺序如何，以及每个值最终落在请求的
哪个位置（mapping）。Schema 在适配器生命周期内不可变。
"""

from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterator, List, Literal, Mapping, Optional, Sequence, Union


OptionType = Literal["string", "number", "integer", "boolean", "enum"]

# choices/default 可以是常量，也可以是根据适配器动态计算的函数
Choices = Union[Sequence[Any], Callable[[Any], Sequence[Any]]]

TRUE_TOKENS = frozenset({"true", "yes", "on", "1"})
FALSE_TOKENS = frozenset({"false", "no", "off", "0"})


@dataclass(frozen=True)
class SchemaOption:
    """单个设置项的声明。

    - mapping: 值在请求中的落点，"parameters" 表示请求体顶层，
      "parameters.options" 表示请求体内的 options 对象。
    - order: 设置块中的序列化顺序。
    """

    key: str
    type: OptionType
    default: Any = None
    order: int = 0
    description: str = ""
    choices: Optional[Choices] = None
    mapping: str = "parameters"

    def resolve_default(self, adapter: Any = None) -> Any:
        if callable(self.default):
            return self.default(adapter)
        return self.default

    def resolve_choices(self, adapter: Any = None) -> List[Any]:
        if self.choices is None:
            return []
        if callable(self.choices):
            return list(self.choices(adapter))
        return list(self.choices)


class Schema:
    """不可变的有序设置项集合。"""

    def __init__(self, options: Sequence[SchemaOption]):
        ordered = sorted(options, key=lambda opt: (opt.order, opt.key))
        self._options: Mapping[str, SchemaOption] = MappingProxyType({opt.key: opt for opt in ordered})

    def __contains__(self, key: object) -> bool:
        return key in self._options

    def __getitem__(self, key: str) -> SchemaOption:
        return self._options[key]

    def __iter__(self) -> Iterator[SchemaOption]:
        return iter(self._options.values())

    def __len__(self) -> int:
        return len(self._options)

    def get(self, key: str) -> Optional[SchemaOption]:
        return self._options.get(key)

    def get_ordered_keys(self) -> List[str]:
        """按 order 返回所有 key，用于设置块的规范序列化顺序。"""

        return list(self._options.keys())

    def get_default(self, overrides: Optional[Mapping[str, Any]] = None, adapter: Any = None) -> Dict[str, Any]:
        """返回默认设置，overrides 中的值优先。"""

        values: Dict[str, Any] = {}
        for key, opt in self._options.items():
            values[key] = opt.resolve_default(adapter)
        for key, value in (overrides or {}).items():
            values[key] = value
        return values

    def coerce(self, settings: Mapping[str, Any]) -> Dict[str, Any]:
        """把已校验的设置值转换为 schema 声明的 Python 类型。

        文档中的 "0.5"、"true" 之类的字符串在这里被还原为数值/布尔值，
        未声明的 key 原样保留（调用方应先做校验）。
        """

        result: Dict[str, Any] = {}
        for key, value in settings.items():
            opt = self._options.get(key)
            result[key] = coerce_value(opt.type, value) if opt else value
        return result

    def map_to_params(self, settings: Mapping[str, Any]) -> Dict[str, Dict[str, Any]]:
        """按 mapping 把设置分组：{"parameters": {...}, "parameters.options": {...}}。

        值为 None 的设置不会出现在结果中。
        """

        grouped: Dict[str, Dict[str, Any]] = {}
        for key, value in self.coerce(settings).items():
            opt = self._options.get(key)
            if opt is None or value is None:
                continue
            grouped.setdefault(opt.mapping, {})[key] = value
        return grouped


def coerce_value(option_type: str, value: Any) -> Any:
    if value is None:
        return None
    if option_type == "boolean":
        if isinstance(value, bool):
            return value
        token = str(value).strip().lower()
        if token in TRUE_TOKENS:
            return True
        if token in FALSE_TOKENS:
            return False
        return value
    if option_type in ("number", "integer"):
        if isinstance(value, bool):
            return value
        try:
            number = float(value)
        except (TypeError, ValueError):
            return value
        if option_type == "integer" or (number.is_integer() and not isinstance(value, float) and "." not in str(value)):
            return int(number)
        return number
    return value
