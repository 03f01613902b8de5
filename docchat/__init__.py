"""docchat 顶层包。

把一份结构化 Markdown 文档当作与大模型对话的协议：文档既是聊天记录，
也是输入框和设置面板。包括文档编解码、设置校验、后端协议适配、
流式请求与会话状态机。
"""

from docchat.session import ChatSession

__version__ = "0.1.0"

__all__ = ["ChatSession", "__version__"]
