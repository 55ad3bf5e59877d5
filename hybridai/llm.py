import json
from typing import Any, Dict, List, Optional

import httpx

from .errors import LocalInferenceError


DEFAULT_LOCAL_MODEL = "qwen2.5-coder:7b-instruct-q4_K_M"
# Ollama ignores the key but OpenAI-compatible clients must send one.
PLACEHOLDER_API_KEY = "ollama"
ALLOWED_ROLES = {"system", "user", "assistant", "tool"}


class LocalLLMClient:
    """OpenAI-compatible chat client for the local Ollama server."""

    def __init__(self, base_url: str = "http://127.0.0.1:11434/v1", timeout: float = 120.0):
        self.base_url = base_url.rstrip("/")
        self.client = httpx.AsyncClient(
            timeout=timeout,
            headers={"Authorization": f"Bearer {PLACEHOLDER_API_KEY}"},
        )

    @staticmethod
    def select_model(model_name: Optional[str], default_local_model: Optional[str]) -> str:
        return model_name or default_local_model or DEFAULT_LOCAL_MODEL

    def _sanitize_messages(self, messages: Any) -> List[Dict[str, Any]]:
        if not isinstance(messages, list):
            return []
        sanitized: List[Dict[str, Any]] = []
        for msg in messages:
            if not isinstance(msg, dict):
                continue
            if msg.get("role") not in ALLOWED_ROLES:
                continue
            sanitized.append(msg)
        return sanitized

    def _normalize_error_text(self, detail: str) -> str:
        text = detail or ""
        for _ in range(2):
            try:
                parsed = json.loads(text)
            except ValueError:
                break
            if isinstance(parsed, dict):
                found = False
                for key in ("error", "detail", "message"):
                    val = parsed.get(key)
                    if isinstance(val, dict):
                        val = val.get("message")
                    if isinstance(val, str) and val.strip():
                        text = val
                        found = True
                        break
                if not found:
                    break
            elif isinstance(parsed, str):
                text = parsed
            else:
                break
        return text

    def _extract_error_detail(self, response: httpx.Response) -> str:
        return self._normalize_error_text(response.text) or response.reason_phrase

    async def chat_completion(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        temperature: float = 0.2,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": model,
            "messages": self._sanitize_messages(messages),
            "temperature": temperature,
            "stream": False,
        }
        if not payload["messages"]:
            raise ValueError("messages must include at least one entry")
        if tools:
            payload["tools"] = tools
        try:
            resp = await self.client.post(f"{self.base_url}/chat/completions", json=payload)
        except httpx.HTTPError as exc:
            raise LocalInferenceError(f"Local model request failed: {exc}") from exc
        if not resp.is_success:
            detail = self._extract_error_detail(resp)
            raise LocalInferenceError(f"Local model returned HTTP {resp.status_code}: {detail}")
        return resp.json()

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
