from __future__ import annotations

import http.client
import inspect
import json
import os
import socket
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Literal, Mapping, Optional

from pydantic import BaseModel

from .errors import ModelError
from .logging_utils import log
from .util import short


DEFAULT_MODEL = "claude:claude-sonnet-4-6"

ProviderName = Literal["claude", "openai", "aliyun", "ollama", "llama_cpp"]
PROVIDERS = ("claude", "openai", "aliyun", "ollama", "llama_cpp")

_API_KEY_ENV: Dict[str, tuple[str, ...]] = {
    "claude": ("BOSS_CLAUDE_API_KEY", "CLAUDE_API_KEY", "ANTHROPIC_API_KEY"),
    "openai": ("BOSS_OPENAI_API_KEY", "OPENAI_API_KEY"),
    "aliyun": ("BOSS_ALIYUN_API_KEY", "DASHSCOPE_API_KEY"),
}


class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str


@dataclass(frozen=True)
class ModelIdentifier:
    provider: str
    model: str

    def __str__(self) -> str:
        return f"{self.provider}:{self.model}"


def infer_provider(model: str) -> str:
    m = model.strip().lower()
    if m.startswith(("gpt-", "o1", "o3")):
        return "openai"
    if m.startswith("qwen"):
        return "aliyun"
    return "claude"


def parse_model_identifier(raw: Optional[str], *, default: str = DEFAULT_MODEL) -> ModelIdentifier:
    """
    Parse `provider:model`. A bare model name infers its provider from the prefix;
    an empty value falls back to `default`.
    """
    value = (raw or "").strip() or default
    head, sep, rest = value.partition(":")
    if sep and head.strip().lower() in PROVIDERS:
        model = rest.strip()
        if not model:
            raise ModelError(f"Model identifier has no model name: {value!r}", provider=head.strip().lower())
        return ModelIdentifier(head.strip().lower(), model)
    return ModelIdentifier(infer_provider(value), value)


def _api_key(provider: str, env: Mapping[str, str]) -> str:
    for name in _API_KEY_ENV.get(provider, ()):
        v = (env.get(name) or "").strip()
        if v:
            return v
    names = " / ".join(_API_KEY_ENV.get(provider, ()))
    raise ModelError(f"No API key configured for {provider} (set {names}).", provider=provider)


def _post_json(url: str, payload: Dict[str, Any], *, headers: Dict[str, str], timeout: float, provider: str) -> Dict[str, Any]:
    body = json.dumps(payload, ensure_ascii=False).encode("utf-8")
    req = urllib.request.Request(
        url,
        data=body,
        headers={"Content-Type": "application/json", **headers},
        method="POST",
    )
    try:
        with urllib.request.urlopen(req, timeout=timeout) as r:  # noqa: S310
            raw = r.read().decode("utf-8", errors="replace")
    except urllib.error.HTTPError as e:
        try:
            detail = e.read().decode("utf-8", errors="replace")
        except OSError:
            detail = ""
        raise ModelError(f"{provider} HTTP error: {e.code} {short(detail, 600)}", provider=provider, status=e.code) from e
    except (socket.timeout, TimeoutError) as e:
        raise ModelError(f"{provider} request timed out after {timeout:g}s", provider=provider) from e
    except urllib.error.URLError as e:
        raise ModelError(f"{provider} is not reachable: {e.reason}", provider=provider) from e
    except (http.client.HTTPException, OSError) as e:
        # Dropped connections and short reads surface from getresponse/read unwrapped.
        raise ModelError(f"{provider} connection failed: {e!r}", provider=provider) from e
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ModelError(f"{provider} returned non-JSON: {short(raw, 600)}", provider=provider) from e
    if not isinstance(data, dict):
        raise ModelError(f"{provider} returned {type(data).__name__}, expected an object", provider=provider)
    return data


def _require_text(text: Any, provider: str) -> str:
    out = str(text or "").strip()
    if not out:
        raise ModelError(f"{provider} returned empty content", provider=provider)
    return out


class ChatBackend:
    name: str = "chat_backend"

    def generate_text(self, messages: List[ChatMessage], *, model: str, timeout: float) -> str:
        raise NotImplementedError


class ClaudeBackend(ChatBackend):
    name = "claude"
    url = "https://api.anthropic.com/v1/messages"

    def __init__(self, api_key: str, *, max_tokens: int = 1000):
        self.api_key = api_key
        self.max_tokens = int(max_tokens)

    def generate_text(self, messages: List[ChatMessage], *, model: str, timeout: float) -> str:
        system = "\n\n".join(m.content for m in messages if m.role == "system")
        payload: Dict[str, Any] = {
            "model": model,
            "max_tokens": self.max_tokens,
            "messages": [{"role": m.role, "content": m.content} for m in messages if m.role != "system"],
        }
        if system:
            payload["system"] = system
        data = _post_json(
            self.url,
            payload,
            headers={"x-api-key": self.api_key, "anthropic-version": "2023-06-01"},
            timeout=timeout,
            provider=self.name,
        )
        parts = [
            str(block.get("text") or "")
            for block in (data.get("content") or [])
            if isinstance(block, dict) and block.get("type") == "text"
        ]
        return _require_text("".join(parts), self.name)


class OpenAIBackend(ChatBackend):
    name = "openai"
    url = "https://api.openai.com/v1/chat/completions"
    temperature: Optional[float] = None

    def __init__(self, api_key: str):
        self.api_key = api_key

    def generate_text(self, messages: List[ChatMessage], *, model: str, timeout: float) -> str:
        payload: Dict[str, Any] = {
            "model": model,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
        }
        if self.temperature is not None:
            payload["temperature"] = self.temperature
        data = _post_json(
            self.url,
            payload,
            headers={"Authorization": f"Bearer {self.api_key}"},
            timeout=timeout,
            provider=self.name,
        )
        choices = data.get("choices") or []
        c0 = choices[0] if choices and isinstance(choices[0], dict) else {}
        msg = c0.get("message") if isinstance(c0.get("message"), dict) else {}
        return _require_text(msg.get("content"), self.name)


class AliyunBackend(OpenAIBackend):
    """DashScope's OpenAI-compatible endpoint."""

    name = "aliyun"
    url = "https://dashscope.aliyuncs.com/compatible-mode/v1/chat/completions"
    temperature = 0.3


class OllamaBackend(ChatBackend):
    """Local Ollama HTTP API (default host: http://localhost:11434)."""

    name = "ollama"

    def __init__(self, *, host: str = "http://localhost:11434"):
        self.host = (host or "").rstrip("/") or "http://localhost:11434"

    def generate_text(self, messages: List[ChatMessage], *, model: str, timeout: float) -> str:
        payload: Dict[str, Any] = {
            "model": model,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "stream": False,
            "options": {"temperature": 0.2},
        }
        data = _post_json(self.host + "/api/chat", payload, headers={}, timeout=timeout, provider=self.name)
        msg = data.get("message") or {}
        return _require_text(msg.get("content") if isinstance(msg, dict) else None, self.name)


class LlamaCppBackend(ChatBackend):
    """In-process GGUF model via llama-cpp-python; the model id is the .gguf path."""

    name = "llama_cpp"

    def __init__(self, *, n_ctx: int = 4096):
        self.n_ctx = int(n_ctx)
        self._models: Dict[str, Any] = {}

    def _load(self, model_path: str) -> Any:
        if model_path in self._models:
            return self._models[model_path]
        try:
            from llama_cpp import Llama  # type: ignore
        except ImportError as e:
            raise ModelError("llama-cpp-python not installed. pip install 'boss-assistant[llama]'", provider=self.name) from e
        init_sig = inspect.signature(getattr(Llama, "__init__"))
        kwargs: Dict[str, Any] = {"model_path": model_path, "n_ctx": self.n_ctx}
        if "verbose" in init_sig.parameters:
            kwargs["verbose"] = False
        try:
            llm = Llama(**kwargs)
        except (ValueError, OSError, RuntimeError) as e:
            raise ModelError(f"Failed to load llama.cpp model {model_path}: {e}", provider=self.name) from e
        self._models[model_path] = llm
        return llm

    def generate_text(self, messages: List[ChatMessage], *, model: str, timeout: float) -> str:
        llm = self._load(model)
        fn: Callable[..., Any] = getattr(llm, "create_chat_completion")
        resp = fn(messages=[{"role": m.role, "content": m.content} for m in messages], temperature=0.2, max_tokens=1000)
        if not isinstance(resp, dict):
            raise ModelError(f"llama_cpp returned {type(resp).__name__}, expected dict", provider=self.name)
        choices = resp.get("choices") or []
        c0 = choices[0] if choices and isinstance(choices[0], dict) else {}
        msg = c0.get("message") if isinstance(c0.get("message"), dict) else {}
        return _require_text(msg.get("content", c0.get("text")), self.name)


class ModelProvider:
    """
    Routes `complete(system, user_prompt, model_identifier)` to the backend named by
    the identifier's provider prefix. Backends are built lazily and cached; API keys
    are read from the environment at first use.
    """

    def __init__(
        self,
        default_model: str = DEFAULT_MODEL,
        *,
        timeout_s: float = 30.0,
        ollama_host: str = "http://localhost:11434",
        llama_ctx: int = 4096,
        env: Optional[Mapping[str, str]] = None,
    ):
        self.default_model = default_model or DEFAULT_MODEL
        self.timeout_s = float(timeout_s)
        self.ollama_host = ollama_host
        self.llama_ctx = int(llama_ctx)
        self._env: Mapping[str, str] = env if env is not None else os.environ
        self._backends: Dict[str, ChatBackend] = {}

    def model_label(self, model_identifier: Optional[str] = None) -> str:
        return str(parse_model_identifier(model_identifier, default=self.default_model))

    def _backend(self, provider: str) -> ChatBackend:
        if provider in self._backends:
            return self._backends[provider]
        backend: ChatBackend
        if provider == "claude":
            backend = ClaudeBackend(_api_key(provider, self._env))
        elif provider == "openai":
            backend = OpenAIBackend(_api_key(provider, self._env))
        elif provider == "aliyun":
            backend = AliyunBackend(_api_key(provider, self._env))
        elif provider == "ollama":
            backend = OllamaBackend(host=self.ollama_host)
        elif provider == "llama_cpp":
            backend = LlamaCppBackend(n_ctx=self.llama_ctx)
        else:
            raise ModelError(f"Unknown model provider: {provider}", provider=provider)
        self._backends[provider] = backend
        return backend

    def complete(self, system: str, user_prompt: str, model_identifier: Optional[str] = None) -> str:
        ident = parse_model_identifier(model_identifier, default=self.default_model)
        backend = self._backend(ident.provider)
        messages: List[ChatMessage] = []
        if system.strip():
            messages.append(ChatMessage(role="system", content=system))
        messages.append(ChatMessage(role="user", content=user_prompt))
        log.debug("model call", extra={"extra": {"model": str(ident), "prompt_chars": len(user_prompt)}})
        return backend.generate_text(messages, model=ident.model, timeout=self.timeout_s)


class StubProvider(ModelProvider):
    """Always fails; forces rule planning and deterministic answer fallbacks."""

    def complete(self, system: str, user_prompt: str, model_identifier: Optional[str] = None) -> str:
        raise ModelError("Model calls are disabled.", provider="stub")
