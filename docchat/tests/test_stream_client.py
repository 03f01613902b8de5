import json
import threading

import httpx
import pytest

from docchat.domain.exceptions import AdapterSetupError, ApiError, NetworkError, RateLimitError, SessionStateError
from docchat.domain.models import Message
from docchat.providers import OllamaAdapter, OpenAIAdapter
from docchat.session.stream_client import StreamClient


class SettingsStub:
    openai_api_key = "sk-test-123456"
    openai_base_url = "https://api.openai.com/v1"
    ollama_base_url = "http://localhost:11434"
    http_timeout = 1.0
    max_decode_errors = 3


class FakeResponse:
    def __init__(self, chunks, status_code=200, text=""):
        self._chunks = list(chunks)
        self.status_code = status_code
        self.text = text
        self.closed = False

    def iter_bytes(self):
        for chunk in self._chunks:
            if self.closed:
                raise httpx.StreamClosed()
            yield chunk

    def read(self):
        return self.text.encode("utf-8")

    def close(self):
        self.closed = True


class StreamContext:
    def __init__(self, response):
        self._response = response

    def __enter__(self):
        return self._response

    def __exit__(self, *args):
        return False


def _fake_client(response=None, captured=None, error=None):
    class Client:
        def __init__(self, *a, **kw):
            if captured is not None:
                captured["client_kwargs"] = kw

        def __enter__(self):
            return self

        def __exit__(self, *a):
            return False

        def stream(self, method, url, headers=None, json=None):
            if captured is not None:
                captured.update({"method": method, "url": url, "headers": headers, "json": json})
            if error is not None:
                raise error
            return StreamContext(response)

    return Client


def _sse(*payloads):
    return [f"data: {json.dumps(p)}\n\n".encode("utf-8") for p in payloads] + [b"data: [DONE]\n\n"]


class Recorder:
    def __init__(self):
        self.items = []
        self.done = 0

    def on_chunk(self, request, error, event):
        self.items.append((error, event))

    def on_done(self, request):
        self.done += 1


def _run(client, adapter, recorder):
    request = client.begin(adapter, {"model": "gpt-4o"}, [Message.create("user", "Hello")], recorder.on_chunk, recorder.on_done)
    assert client.wait(request, timeout=5)
    return request


def test_stream_delivers_events_in_order(monkeypatch):
    body = b"".join(
        _sse(
            {"choices": [{"delta": {"role": "assistant", "content": "Hi"}}]},
            {"choices": [{"delta": {"content": " there"}, "finish_reason": "stop"}]},
        )
    )
    # 故意在 JSON 中间切开
    chunks = [body[:17], body[17:60], body[60:]]
    captured = {}
    monkeypatch.setattr("httpx.Client", _fake_client(FakeResponse(chunks), captured))

    recorder = Recorder()
    client = StreamClient(SettingsStub())
    request = _run(client, OpenAIAdapter(SettingsStub()), recorder)

    deltas = [event.content_delta for error, event in recorder.items if event and event.content_delta]
    assert deltas == ["Hi", " there"]
    assert all(error is None for error, _ in recorder.items)
    assert recorder.done == 1
    assert request.finished
    assert client.active is None
    assert captured["method"] == "POST"
    assert captured["json"]["messages"] == [{"role": "user", "content": "Hello"}]


def test_stream_reports_final_usage_from_ollama(monkeypatch):
    lines = [
        {"message": {"role": "assistant", "content": "Hi"}, "done": False},
        {"message": {"role": "assistant", "content": ""}, "done": True, "prompt_eval_count": 4, "eval_count": 2},
    ]
    body = b"".join(json.dumps(line).encode("utf-8") + b"\n" for line in lines)
    monkeypatch.setattr("httpx.Client", _fake_client(FakeResponse([body])))

    recorder = Recorder()
    _run(StreamClient(SettingsStub()), OllamaAdapter(SettingsStub()), recorder)

    usages = [event.token_usage for _, event in recorder.items if event and event.token_usage]
    assert len(usages) == 1
    assert usages[0].total_tokens == 6
    assert recorder.done == 1


@pytest.mark.parametrize(
    "status, error_type",
    [(429, RateLimitError), (500, ApiError), (401, ApiError)],
)
def test_stream_http_errors(monkeypatch, status, error_type):
    monkeypatch.setattr("httpx.Client", _fake_client(FakeResponse([], status_code=status, text="nope")))

    recorder = Recorder()
    _run(StreamClient(SettingsStub()), OpenAIAdapter(SettingsStub()), recorder)

    assert len(recorder.items) == 1
    error, event = recorder.items[0]
    assert isinstance(error, error_type)
    assert error.http_status == status
    assert event is None
    assert recorder.done == 1


def test_stream_transport_error_becomes_network_error(monkeypatch):
    monkeypatch.setattr("httpx.Client", _fake_client(error=httpx.ConnectError("connection refused")))

    recorder = Recorder()
    _run(StreamClient(SettingsStub()), OpenAIAdapter(SettingsStub()), recorder)

    error, event = recorder.items[-1]
    assert isinstance(error, NetworkError)
    assert "connection refused" in error.message
    assert recorder.done == 1


def test_stream_skips_bad_units_then_aborts(monkeypatch):
    good = b'data: {"choices": [{"delta": {"content": "ok"}}]}\n\n'
    bad = b"data: {broken\n\n"
    monkeypatch.setattr("httpx.Client", _fake_client(FakeResponse([bad, good, bad, bad, bad, good])))

    recorder = Recorder()
    _run(StreamClient(SettingsStub()), OpenAIAdapter(SettingsStub()), recorder)

    deltas = [event.content_delta for _, event in recorder.items if event and event.content_delta]
    assert deltas == ["ok"]
    error, _ = recorder.items[-1]
    assert isinstance(error, NetworkError)
    assert error.code == "STREAM_UNDECODABLE"
    assert recorder.done == 1


def test_begin_rejects_second_request_and_failed_setup(monkeypatch):
    release = threading.Event()

    class SlowResponse(FakeResponse):
        def iter_bytes(self):
            release.wait(5)
            yield b"data: [DONE]\n\n"

    monkeypatch.setattr("httpx.Client", _fake_client(SlowResponse([])))
    client = StreamClient(SettingsStub())
    recorder = Recorder()
    adapter = OpenAIAdapter(SettingsStub())
    request = client.begin(adapter, {}, [Message.create("user", "Hi")], recorder.on_chunk, recorder.on_done)
    with pytest.raises(SessionStateError):
        client.begin(adapter, {}, [Message.create("user", "Hi")], recorder.on_chunk, recorder.on_done)
    release.set()
    assert client.wait(request, timeout=5)

    class NoKey(SettingsStub):
        openai_api_key = None

    with pytest.raises(AdapterSetupError):
        client.begin(OpenAIAdapter(NoKey()), {}, [Message.create("user", "Hi")], recorder.on_chunk, recorder.on_done)


def test_cancel_still_fires_done(monkeypatch):
    started = threading.Event()
    release = threading.Event()

    class SlowResponse(FakeResponse):
        def iter_bytes(self):
            yield b'data: {"choices": [{"delta": {"content": "a"}}]}\n\n'
            started.set()
            release.wait(5)
            if self.closed:
                raise httpx.StreamClosed()
            yield b'data: {"choices": [{"delta": {"content": "b"}}]}\n\n'

    monkeypatch.setattr("httpx.Client", _fake_client(SlowResponse([])))
    client = StreamClient(SettingsStub())
    recorder = Recorder()
    request = client.begin(OpenAIAdapter(SettingsStub()), {}, [Message.create("user", "Hi")], recorder.on_chunk, recorder.on_done)
    assert started.wait(5)
    request.cancel()
    release.set()
    assert client.wait(request, timeout=5)

    assert request.cancelled
    assert recorder.done == 1
    assert all(error is None for error, _ in recorder.items)
    assert [e.content_delta for _, e in recorder.items] in (["a"], [])


def test_wrong_shape_chunk_is_skipped_and_stream_continues(monkeypatch):
    body = b'data: {"choices": ["oops"]}\n\n' + b"".join(_sse({"choices": [{"delta": {"content": "after"}}]}))
    monkeypatch.setattr("httpx.Client", _fake_client(FakeResponse([body])))

    recorder = Recorder()
    _run(StreamClient(SettingsStub()), OpenAIAdapter(SettingsStub()), recorder)

    deltas = [event.content_delta for _, event in recorder.items if event and event.content_delta]
    assert deltas == ["after"]
    assert all(error is None for error, _ in recorder.items)
    assert recorder.done == 1


def test_unexpected_adapter_error_is_reported(monkeypatch):
    class BrokenAdapter(OpenAIAdapter):
        def parse_line(self, line):
            raise KeyError("boom")

    monkeypatch.setattr("httpx.Client", _fake_client(FakeResponse(_sse({"choices": []}))))

    recorder = Recorder()
    _run(StreamClient(SettingsStub()), BrokenAdapter(SettingsStub()), recorder)

    error, event = recorder.items[-1]
    assert isinstance(error, NetworkError)
    assert error.code == "STREAM_FAILED"
    assert "KeyError" in error.message
    assert recorder.done == 1


def test_proxy_and_tls_settings_reach_http_client(monkeypatch):
    class Proxied(SettingsStub):
        http_proxy = "http://proxy.local:3128"
        allow_insecure = True

    captured = {}
    monkeypatch.setattr("httpx.Client", _fake_client(FakeResponse(_sse()), captured))

    _run(StreamClient(Proxied()), OpenAIAdapter(Proxied()), Recorder())

    kwargs = captured["client_kwargs"]
    assert kwargs["proxy"] == "http://proxy.local:3128"
    assert kwargs["verify"] is False
    assert kwargs["trust_env"] is False
    assert kwargs["timeout"] == 1.0


def test_default_client_options_verify_tls(monkeypatch):
    captured = {}
    monkeypatch.setattr("httpx.Client", _fake_client(FakeResponse(_sse()), captured))

    _run(StreamClient(SettingsStub()), OpenAIAdapter(SettingsStub()), Recorder())

    assert captured["client_kwargs"]["verify"] is True
    assert "proxy" not in captured["client_kwargs"]
