from __future__ import annotations

"""
Thin async clients for the text models used to draft clinical notes.

Design intent:
- Hide provider request shapes (Gemini generateContent, OpenAI chat completions) behind one call.
- Raise `LLMError` for transport/HTTP problems; parsing is the caller's concern.
- Tolerate chatty model output when pulling JSON out of a reply.
"""

import json
from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx


GEMINI_API_BASE = "https://generativelanguage.googleapis.com/v1beta/models"
OPENAI_CHAT_URL = "https://api.openai.com/v1/chat/completions"

SYSTEM_PROMPT = (
    "You are a medical AI assistant specialized in clinical documentation. Generate accurate, "
    "professional medical documentation based on patient-provider conversations."
)


class LLMError(RuntimeError):
    """Raised when a model call fails before any text comes back."""


class LLMClient(ABC):
    @property
    @abstractmethod
    def name(self) -> str: ...

    @abstractmethod
    async def complete(self, prompt: str, *, json_mode: bool = False) -> str: ...

    async def aclose(self) -> None:
        return None


class GeminiLLMClient(LLMClient):
    def __init__(
        self,
        api_key: str,
        *,
        model: str = "gemini-2.5-flash",
        temperature: float = 0.1,
        max_tokens: int = 2000,
        timeout: float = 60.0,
        base_url: str = GEMINI_API_BASE,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._api_key = api_key
        self._model = model or "gemini-2.5-flash"
        self._temperature = float(temperature)
        self._max_tokens = int(max_tokens)
        self._base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    @property
    def name(self) -> str:
        return "gemini"

    async def complete(self, prompt: str, *, json_mode: bool = False) -> str:
        if not self._api_key:
            raise LLMError("Gemini API key not configured")
        generation_config: dict[str, Any] = {
            "temperature": self._temperature,
            "topP": 0.95,
            "topK": 40,
            "maxOutputTokens": self._max_tokens,
        }
        if json_mode:
            generation_config["responseMimeType"] = "application/json"
        body = {"contents": [{"parts": [{"text": prompt}]}], "generationConfig": generation_config}
        try:
            resp = await self._client.post(
                f"{self._base_url}/{self._model}:generateContent",
                params={"key": self._api_key},
                json=body,
            )
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as exc:
            raise LLMError(f"Gemini request failed: {exc.response.status_code}") from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise LLMError(f"Gemini request failed: {exc}") from exc

        candidates = data.get("candidates") or []
        parts = ((candidates[0].get("content") or {}).get("parts") or []) if candidates else []
        text = "".join(str(p.get("text") or "") for p in parts).strip()
        if not text:
            raise LLMError("No content returned from Gemini")
        return text

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class OpenAIChatClient(LLMClient):
    def __init__(
        self,
        api_key: str,
        *,
        model: str = "gpt-4",
        temperature: float = 0.1,
        max_tokens: int = 2000,
        timeout: float = 60.0,
        url: str = OPENAI_CHAT_URL,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._api_key = api_key
        self._model = model or "gpt-4"
        self._temperature = float(temperature)
        self._max_tokens = int(max_tokens)
        self._url = url
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    @property
    def name(self) -> str:
        return "openai"

    async def complete(self, prompt: str, *, json_mode: bool = False) -> str:
        if not self._api_key:
            raise LLMError("OpenAI API key not configured")
        body = {
            "model": self._model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            "temperature": self._temperature,
            "max_tokens": self._max_tokens,
        }
        try:
            resp = await self._client.post(
                self._url,
                headers={"Authorization": f"Bearer {self._api_key}"},
                json=body,
            )
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as exc:
            raise LLMError(f"OpenAI request failed: {exc.response.status_code}") from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise LLMError(f"OpenAI request failed: {exc}") from exc

        choices = data.get("choices") or []
        message = (choices[0].get("message") or {}) if choices else {}
        return str(message.get("content") or "")

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def _extract_first_json(text: str, open_ch: str, close_ch: str) -> str:
    start = text.find(open_ch)
    if start < 0:
        return ""
    depth = 0
    in_str = False
    escape = False
    for i, ch in enumerate(text[start:], start=start):
        if in_str:
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_str = False
            continue
        if ch == '"':
            in_str = True
            continue
        if ch == open_ch:
            depth += 1
        elif ch == close_ch:
            depth -= 1
            if depth == 0:
                return text[start : i + 1]
    return ""


def parse_json_object(raw: str) -> dict[str, Any] | None:
    if not raw:
        return None
    try:
        data = json.loads(raw)
        if isinstance(data, dict):
            return data
    except ValueError:
        pass

    extracted = _extract_first_json(raw, "{", "}")
    if not extracted:
        return None
    try:
        data = json.loads(extracted)
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


def parse_json_array(raw: str) -> list[Any] | None:
    if not raw:
        return None
    try:
        data = json.loads(raw)
        if isinstance(data, list):
            return data
        if isinstance(data, dict):
            # Some models wrap the list: {"entities": [...]}.
            for value in data.values():
                if isinstance(value, list):
                    return value
    except ValueError:
        pass

    extracted = _extract_first_json(raw, "[", "]")
    if not extracted:
        return None
    try:
        data = json.loads(extracted)
    except ValueError:
        return None
    return data if isinstance(data, list) else None
