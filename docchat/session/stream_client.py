"""流式请求客户端。

一次提交对应一个 StreamRequest：

1. 控制线程调用 begin()：执行适配器前置检查、构造请求，并启动工作线程。
2. 工作线程用 httpx 流式读取响应字节，交给适配器解析为 NormalizedEvent，
   结果放入队列（channel），不直接触碰会话状态。
3. 控制线程调用 pump()：按到达顺序把事件交给 on_chunk，流结束后调用一次 on_done。

错误（网络、HTTP 状态码、连续解码失败）以 on_chunk(request, error, None)
的形式送达，随后仍然会调用 on_done。
"""

import logging
import queue
import threading
import time
from typing import Any, Callable, Mapping, Optional, Sequence, Tuple
from uuid import uuid4

import httpx

from docchat.config.settings import settings as default_settings
from docchat.domain.exceptions import (
    AdapterSetupError,
    ApiError,
    BusinessError,
    NetworkError,
    ProtocolDecodeError,
    RateLimitError,
    SessionStateError,
)
from docchat.domain.models import Message, NormalizedEvent
from docchat.infrastructure.logging.logger import logger
from docchat.providers.base import ProtocolAdapter, http_client_options

ChunkCallback = Callable[["StreamRequest", Optional[BusinessError], Optional[NormalizedEvent]], None]
DoneCallback = Callable[["StreamRequest"], None]

_CHUNK = "chunk"
_ERROR = "error"
_DONE = "done"


class StreamRequest:
    """单次提交的句柄。

    - cancel(): 尽力终止底层连接，on_done 仍会被调用。
    - finished: on_done 已经执行。
    """

    def __init__(
        self,
        url: str,
        headers: Mapping[str, str],
        body: Mapping[str, Any],
        on_chunk: ChunkCallback,
        on_done: DoneCallback,
    ):
        self.id = f"rq-{uuid4().hex[:12]}"
        self.url = url
        self.headers = dict(headers)
        self.body = dict(body)
        self.on_chunk = on_chunk
        self.on_done = on_done
        self.finished = False
        self._cancelled = threading.Event()
        self._response: Optional[httpx.Response] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        if self._cancelled.is_set():
            return
        self._cancelled.set()
        response = self._response
        if response is not None:
            try:
                response.close()
            except (httpx.HTTPError, httpx.StreamError, RuntimeError) as e:
                logger.log(logging.DEBUG, "Error while closing response", extra={"extra": {"request_id": self.id, "error": str(e)}})
        logger.info("Stream request cancelled", extra={"extra": {"request_id": self.id}})


class StreamClient:
    """每个会话持有一个 StreamClient，同一时刻最多一个活动请求。"""

    def __init__(self, cfg=default_settings):
        self._settings = cfg
        self._channel: "queue.Queue[Tuple[StreamRequest, str, Any]]" = queue.Queue()
        self._active: Optional[StreamRequest] = None

    @property
    def active(self) -> Optional[StreamRequest]:
        return self._active

    def begin(
        self,
        adapter: ProtocolAdapter,
        settings: Mapping[str, Any],
        messages: Sequence[Message],
        on_chunk: ChunkCallback,
        on_done: DoneCallback,
    ) -> StreamRequest:
        """发起一次流式请求并立即返回句柄。

        Raises:
            SessionStateError: 已有未取消的活动请求。
            AdapterSetupError: 适配器前置检查失败，不会发起网络请求。
        """

        if self._active is not None and not self._active.cancelled:
            raise SessionStateError(code="REQUEST_IN_FLIGHT", message="A request is already in flight")
        if not adapter.setup():
            raise AdapterSetupError(
                code="ADAPTER_SETUP_FAILED",
                message=f"Adapter {adapter.capabilities.name!r} is not ready",
                adapter=adapter.capabilities.name,
            )
        built = adapter.build_request(settings, list(messages))
        request = StreamRequest(built.url, built.headers, built.body, on_chunk, on_done)
        self._active = request
        logger.info(
            "Stream request started",
            extra={"extra": {"request_id": request.id, "adapter": adapter.capabilities.name, "url": request.url}},
        )
        worker = threading.Thread(
            target=self._run,
            args=(adapter, request),
            name=f"docchat-stream-{request.id}",
            daemon=True,
        )
        worker.start()
        return request

    def pump(self, timeout: float = 0.0) -> int:
        """在控制线程上分发已到达的事件，返回分发的数量。

        timeout > 0 时最多等待这么久等第一个事件，之后的事件不再等待。
        """

        processed = 0
        wait = timeout
        while True:
            try:
                if wait > 0:
                    request, kind, payload = self._channel.get(timeout=wait)
                else:
                    request, kind, payload = self._channel.get_nowait()
            except queue.Empty:
                return processed
            wait = 0.0
            processed += 1
            if kind == _DONE:
                if self._active is request:
                    self._active = None
                request.finished = True
                request.on_done(request)
            elif kind == _ERROR:
                request.on_chunk(request, payload, None)
            else:
                request.on_chunk(request, None, payload)

    def wait(self, request: StreamRequest, timeout: Optional[float] = None) -> bool:
        """持续 pump 直到 request 结束；超时返回 False。"""

        deadline = None if timeout is None else time.monotonic() + timeout
        while not request.finished:
            if deadline is not None and time.monotonic() >= deadline:
                return False
            self.pump(timeout=0.05)
        return True

    # ---- 工作线程 ----

    def _run(self, adapter: ProtocolAdapter, request: StreamRequest) -> None:
        full_response = bytearray()
        try:
            with httpx.Client(**http_client_options(self._settings)) as client:
                with client.stream("POST", request.url, headers=request.headers, json=request.body) as resp:
                    request._response = resp
                    if request.cancelled:
                        return
                    if resp.status_code == 429:
                        resp.read()
                        raise RateLimitError(code="RATE_LIMIT", message="Backend rate limit", http_status=429)
                    if resp.status_code >= 400:
                        resp.read()
                        raise ApiError(
                            code="API_ERROR",
                            message=resp.text or f"HTTP {resp.status_code}",
                            http_status=resp.status_code,
                        )
                    self._consume(adapter, request, resp, full_response)
            if not request.cancelled:
                self._finish(adapter, request, bytes(full_response))
        except BusinessError as e:
            if not request.cancelled:
                self._put(request, _ERROR, e)
        except (httpx.HTTPError, httpx.StreamError) as e:
            if not request.cancelled:
                self._put(request, _ERROR, NetworkError(code="NETWORK_ERROR", message=str(e) or type(e).__name__))
        except Exception as e:
            # 适配器的意外异常同样作为错误事件送达
            logger.exception("Unexpected error in stream worker", extra={"extra": {"request_id": request.id}})
            if not request.cancelled:
                self._put(request, _ERROR, NetworkError(code="STREAM_FAILED", message=f"{type(e).__name__}: {e}"))
        finally:
            adapter.teardown()
            logger.info(
                "Stream request finished",
                extra={"extra": {"request_id": request.id, "bytes": len(full_response), "cancelled": request.cancelled}},
            )
            self._put(request, _DONE, None)

    def _consume(self, adapter: ProtocolAdapter, request: StreamRequest, resp, full_response: bytearray) -> None:
        max_errors = getattr(self._settings, "max_decode_errors", 8)
        decode_errors = 0
        for raw in resp.iter_bytes():
            if request.cancelled:
                return
            full_response.extend(raw)
            data = raw
            while True:
                try:
                    event = adapter.parse_chunk(data)
                except ProtocolDecodeError as e:
                    data = b""
                    decode_errors += 1
                    logger.warning(
                        "Skipping undecodable stream unit",
                        extra={"extra": {"request_id": request.id, "error": e.message, "count": decode_errors}},
                    )
                    if decode_errors >= max_errors:
                        raise NetworkError(
                            code="STREAM_UNDECODABLE",
                            message=f"Aborted after {decode_errors} undecodable stream units",
                        )
                    continue
                data = b""
                if event is None:
                    break
                decode_errors = 0
                self._put(request, _CHUNK, event)

    def _finish(self, adapter: ProtocolAdapter, request: StreamRequest, full_response: bytes) -> None:
        try:
            tail = adapter.flush()
        except ProtocolDecodeError as e:
            logger.warning("Skipping undecodable stream tail", extra={"extra": {"request_id": request.id, "error": e.message}})
            tail = None
        if tail is not None:
            self._put(request, _CHUNK, tail)
        usage = adapter.parse_final(full_response)
        if usage is not None:
            self._put(request, _CHUNK, NormalizedEvent(token_usage=usage))

    def _put(self, request: StreamRequest, kind: str, payload: Any) -> None:
        self._channel.put((request, kind, payload))
