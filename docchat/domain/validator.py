"""设置块校验。

只对已解码的值做检查，不依赖文档本身，便于脱离编辑器单独测试。
"""

import math
from typing import Any, Dict, Mapping

from docchat.domain.schema import FALSE_TOKENS, TRUE_TOKENS, Schema, SchemaOption


def validate(schema: Schema, settings: Mapping[str, Any], adapter_context: Any = None) -> Dict[str, str]:
    """校验 settings，返回 {key: 错误信息}；空字典表示全部合法。

    Args:
        schema: 当前适配器声明的 schema。
        settings: 从文档设置块解码出的值。
        adapter_context: 计算动态 choices 时传给 choices 函数的上下文（通常是适配器）。
    """

    errors: Dict[str, str] = {}
    for key, value in settings.items():
        opt = schema.get(key)
        if opt is None:
            errors[key] = "unknown setting"
            continue
        message = _check(opt, value, adapter_context)
        if message:
            errors[key] = message
    return errors


def _check(opt: SchemaOption, value: Any, adapter_context: Any) -> str:
    if opt.type == "enum":
        choices = opt.resolve_choices(adapter_context)
        if value not in choices:
            return "must be one of: " + ", ".join(str(c) for c in choices)
        return ""
    if opt.type == "number":
        return "" if _as_number(value) is not None else "expected number"
    if opt.type == "integer":
        number = _as_number(value)
        if number is None or not number.is_integer():
            return "expected integer"
        return ""
    if opt.type == "boolean":
        if isinstance(value, bool):
            return ""
        if isinstance(value, (str, int)) and str(value).strip().lower() in TRUE_TOKENS | FALSE_TOKENS:
            return ""
        return "expected boolean"
    if opt.type == "string":
        if isinstance(value, (dict, list, tuple, set)) or value is None:
            return "expected string"
        return ""
    return f"unsupported type {opt.type!r}"


def _as_number(value: Any):
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number
