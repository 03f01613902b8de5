import pydantic
import pytest

from docchat.config.settings import DocChatSettings


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    for name in (
        "OPENAI_API_KEY",
        "DEFAULT_ADAPTER",
        "HTTP_TIMEOUT",
        "HTTP_PROXY",
        "ALLOW_INSECURE",
        "LLM_ROLE_LABEL",
        "DOCCHAT_CONFIG_FILE",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    return tmp_path


def test_defaults(clean_env):
    cfg = DocChatSettings()
    assert cfg.default_adapter == "openai"
    assert cfg.show_settings is True
    assert cfg.llm_role_label == "assistant"
    assert cfg.copilot_token_files[0].endswith("hosts.json")


def test_yaml_config_file(clean_env, monkeypatch):
    path = clean_env / "custom.yaml"
    path.write_text("default_adapter: ollama\nllm_role_label: Copilot\nhttp_timeout: 5\n", encoding="utf-8")
    monkeypatch.setenv("DOCCHAT_CONFIG_FILE", str(path))

    cfg = DocChatSettings()
    assert cfg.default_adapter == "ollama"
    assert cfg.llm_role_label == "Copilot"
    assert cfg.http_timeout == 5.0


def test_environment_overrides_yaml(clean_env, monkeypatch):
    (clean_env / "config.yaml").write_text("default_adapter: ollama\n", encoding="utf-8")
    monkeypatch.setenv("DEFAULT_ADAPTER", "copilot")
    assert DocChatSettings().default_adapter == "copilot"


def test_validators(clean_env):
    with pytest.raises(pydantic.ValidationError):
        DocChatSettings(openai_api_key="short")
    with pytest.raises(pydantic.ValidationError):
        DocChatSettings(user_role_label="   ")
    assert DocChatSettings(user_role_label="  Me ").user_role_label == "Me"


def test_proxy_and_tls_settings(clean_env, monkeypatch):
    cfg = DocChatSettings()
    assert cfg.http_proxy is None
    assert cfg.allow_insecure is False

    monkeypatch.setenv("HTTP_PROXY", "http://127.0.0.1:7890")
    monkeypatch.setenv("ALLOW_INSECURE", "true")
    cfg = DocChatSettings()
    assert cfg.http_proxy == "http://127.0.0.1:7890"
    assert cfg.allow_insecure is True
