from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx

from ..errors import OracleUnavailable


@dataclass(frozen=True)
class ChatMessage:
    role: str
    content: str


class OllamaChatClient:
    def __init__(self, *, base_url: str, model: str, timeout_s: float = 120.0, options: dict[str, Any] | None = None):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout_s = float(timeout_s)
        self.options = dict(options or {})

    @property
    def name(self) -> str:
        return f"ollama:{self.model}"

    def chat(self, messages: list[ChatMessage]) -> str:
        url = f"{self.base_url}/api/chat"
        payload: dict[str, Any] = {
            "model": self.model,
            "stream": False,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
        }
        if self.options:
            payload["options"] = self.options

        try:
            with httpx.Client(timeout=self.timeout_s) as client:
                r = client.post(url, json=payload)
        except httpx.HTTPError as e:
            raise OracleUnavailable(
                f"Failed to connect to Ollama at {self.base_url}. Is it running? ({e})"
            ) from e

        if r.status_code != 200:
            raise OracleUnavailable(f"Ollama error {r.status_code} for {self.model}: {r.text[:200]}")

        try:
            data = r.json()
        except ValueError as e:
            raise OracleUnavailable(f"Ollama returned a non-JSON envelope: {r.text[:200]}") from e
        msg = data.get("message") if isinstance(data, dict) else None
        content = msg.get("content") if isinstance(msg, dict) else None
        if not isinstance(content, str):
            raise OracleUnavailable(f"Unexpected Ollama response: {data}")
        return content


def list_models(base_url: str, *, timeout_s: float = 5.0) -> list[str]:
    """Names of the models installed on an Ollama server."""
    try:
        r = httpx.get(f"{base_url.rstrip('/')}/api/tags", timeout=timeout_s)
        r.raise_for_status()
        data = r.json()
    except (httpx.HTTPError, ValueError) as e:
        raise OracleUnavailable(f"Ollama not reachable at {base_url}: {e}") from e
    return [m.get("name") for m in (data.get("models") or []) if isinstance(m, dict) and m.get("name")]


def build_backends(
    *,
    base_url: str,
    models: tuple[str, ...] | list[str],
    temperature: float = 0.1,
    timeout_s: float = 120.0,
    num_predict: int = 2000,
) -> list[OllamaChatClient]:
    return [
        OllamaChatClient(
            base_url=base_url,
            model=m,
            timeout_s=timeout_s,
            options={"temperature": float(temperature), "num_predict": int(num_predict)},
        )
        for m in models
    ]
