from __future__ import annotations

import http.client
import io
import json
import socket
import urllib.error
import urllib.request
from typing import Any, Dict, List

import pytest

from boss.errors import ModelError
from boss.llm import ModelProvider, StubProvider, infer_provider, parse_model_identifier

ENV = {"BOSS_CLAUDE_API_KEY": "k-claude", "OPENAI_API_KEY": "k-openai", "DASHSCOPE_API_KEY": "k-qwen"}


class _Response:
    def __init__(self, body: bytes):
        self._body = body

    def read(self) -> bytes:
        return self._body

    def __enter__(self) -> "_Response":
        return self

    def __exit__(self, *exc: object) -> None:
        return None


def _fake_urlopen(monkeypatch, outcome: Any) -> List[urllib.request.Request]:  # type: ignore[no-untyped-def]
    seen: List[urllib.request.Request] = []

    def urlopen(req, timeout=None):  # type: ignore[no-untyped-def]
        seen.append(req)
        if isinstance(outcome, BaseException):
            raise outcome
        body = outcome if isinstance(outcome, bytes) else json.dumps(outcome).encode("utf-8")
        return _Response(body)

    monkeypatch.setattr(urllib.request, "urlopen", urlopen)
    return seen


@pytest.mark.parametrize(
    "raw, provider, model",
    [
        ("claude:claude-sonnet-4-6", "claude", "claude-sonnet-4-6"),
        ("OpenAI:gpt-4o", "openai", "gpt-4o"),
        ("gpt-4o-mini", "openai", "gpt-4o-mini"),
        ("qwen-max", "aliyun", "qwen-max"),
        ("ollama:llama3:8b", "ollama", "llama3:8b"),
        ("some-model", "claude", "some-model"),
    ],
)
def test_parse_model_identifier(raw: str, provider: str, model: str) -> None:
    ident = parse_model_identifier(raw)
    assert (ident.provider, ident.model) == (provider, model)


def test_parse_model_identifier_defaults_and_errors() -> None:
    assert str(parse_model_identifier("", default="ollama:phi3")) == "ollama:phi3"
    assert infer_provider("o3-mini") == "openai"
    with pytest.raises(ModelError):
        parse_model_identifier("claude:")


def test_claude_request_shape(monkeypatch) -> None:  # type: ignore[no-untyped-def]
    seen = _fake_urlopen(monkeypatch, {"content": [{"type": "text", "text": "hello "}, {"type": "text", "text": "there"}]})
    provider = ModelProvider("claude:test", env=ENV)

    assert provider.complete("be brief", "hi") == "hello there"

    req = seen[0]
    assert req.full_url == "https://api.anthropic.com/v1/messages"
    assert req.get_header("X-api-key") == "k-claude"
    payload: Dict[str, Any] = json.loads(req.data)
    assert payload["system"] == "be brief"
    assert payload["messages"] == [{"role": "user", "content": "hi"}]
    assert payload["model"] == "test"


def test_openai_compatible_backends(monkeypatch) -> None:  # type: ignore[no-untyped-def]
    seen = _fake_urlopen(monkeypatch, {"choices": [{"message": {"content": "ok"}}]})
    provider = ModelProvider(env=ENV)

    assert provider.complete("", "hi", "gpt-4o") == "ok"
    assert provider.complete("", "hi", "qwen-max") == "ok"

    assert seen[0].get_header("Authorization") == "Bearer k-openai"
    assert "dashscope" in seen[1].full_url
    assert json.loads(seen[1].data)["temperature"] == 0.3


def test_ollama_needs_no_key(monkeypatch) -> None:  # type: ignore[no-untyped-def]
    seen = _fake_urlopen(monkeypatch, {"message": {"content": "local"}})
    provider = ModelProvider(ollama_host="http://box:11434/", env={})

    assert provider.complete("sys", "hi", "ollama:llama3") == "local"
    assert seen[0].full_url == "http://box:11434/api/chat"


@pytest.mark.parametrize(
    "outcome, fragment",
    [
        (urllib.error.HTTPError("u", 529, "overloaded", {}, io.BytesIO(b"busy")), "HTTP error: 529"),
        (urllib.error.URLError("refused"), "not reachable"),
        (socket.timeout("slow"), "timed out"),
        (http.client.RemoteDisconnected("Remote end closed connection without response"), "connection failed"),
        (ConnectionResetError(104, "Connection reset by peer"), "connection failed"),
        (http.client.IncompleteRead(b"{\"con"), "connection failed"),
        (b"<html>", "non-JSON"),
        ({"content": []}, "empty content"),
    ],
)
def test_failures_become_model_errors(monkeypatch, outcome: Any, fragment: str) -> None:  # type: ignore[no-untyped-def]
    _fake_urlopen(monkeypatch, outcome)
    provider = ModelProvider("claude:test", env=ENV)

    with pytest.raises(ModelError, match=fragment) as err:
        provider.complete("", "hi")
    assert err.value.provider == "claude"


def test_missing_api_key(monkeypatch) -> None:  # type: ignore[no-untyped-def]
    seen = _fake_urlopen(monkeypatch, {})
    with pytest.raises(ModelError, match="No API key configured for openai"):
        ModelProvider(env={}).complete("", "hi", "openai:gpt-4o")
    assert seen == []


def test_stub_provider_always_fails() -> None:
    with pytest.raises(ModelError):
        StubProvider().complete("", "hi")
    assert StubProvider().model_label("ollama:phi3") == "ollama:phi3"
