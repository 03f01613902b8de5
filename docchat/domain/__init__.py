"""领域层模型与协议。

包含：
- models: 统一的 Message / NormalizedEvent / AdapterRequest 模型。
- schema: 后端设置 schema 及默认值、类型转换、参数映射。
- validator: 设置块校验。
- exceptions: 业务异常类型定义。
"""
