"""对话文档层：文档文本与消息日志之间的编解码，以及文档缓冲区接口。"""

from docchat.document.buffer import DocumentBuffer, InMemoryDocument
from docchat.document.codec import DocumentCodec

__all__ = ["DocumentBuffer", "DocumentCodec", "InMemoryDocument"]
