from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from .errors import LLMError, StructuredOutputError

logger = logging.getLogger(__name__)

JSON_SYSTEM_PROMPT = (
    "You are a careful research assistant. Reply with a single JSON object that matches the "
    "contract in the user message. No prose, no markdown fences."
)


class StructuredLLM(Protocol):
    """Completion capability that returns JSON matching a contract or raises LLMError."""

    async def complete_json(
        self,
        prompt: str,
        contract: dict[str, Any],
        *,
        model: str | None = None,
        max_tokens: int = 1600,
    ) -> dict[str, Any]: ...


@dataclass
class LLMResponse:
    text: str
    raw: dict[str, Any] | None = None


class LLMClient:
    """OpenAI-compatible chat completions client."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        default_model: str,
        temperature: float = 0.0,
        timeout: float = 80.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.default_model = default_model
        self.temperature = temperature
        self.timeout = timeout
        self.transport = transport

    @property
    def enabled(self) -> bool:
        return bool(self.api_key and self.base_url)

    async def chat(
        self,
        model: str,
        system_prompt: str,
        user_prompt: str,
        max_tokens: int = 1200,
        temperature: float | None = None,
        json_mode: bool = False,
    ) -> LLMResponse:
        if not self.enabled:
            raise LLMError("LLM is not configured (missing LLM_API_KEY)")

        payload: dict[str, Any] = {
            "model": model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": self.temperature if temperature is None else temperature,
            "max_tokens": max_tokens,
        }
        if json_mode:
            payload["response_format"] = {"type": "json_object"}

        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(
                    f"{self.base_url}/chat/completions",
                    headers=headers,
                    json=payload,
                )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as exc:
            raise LLMError(
                f"LLM request failed with status {exc.response.status_code}",
                context={"model": model},
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise LLMError(f"LLM request failed: {exc}", context={"model": model}) from exc

        choices = data.get("choices") or []
        if not choices:
            raise LLMError("LLM response has no choices", context={"model": model})
        message = choices[0].get("message") or {}
        content = message.get("content", "")
        if isinstance(content, list):
            text_parts = []
            for part in content:
                if isinstance(part, dict) and part.get("type") == "text":
                    text_parts.append(str(part.get("text", "")))
                elif isinstance(part, str):
                    text_parts.append(part)
            text = "\n".join(text_parts).strip()
        else:
            text = str(content or "").strip()
        if not text:
            raise LLMError("LLM returned an empty message", context={"model": model})
        return LLMResponse(text=text, raw=data)

    async def complete_json(
        self,
        prompt: str,
        contract: dict[str, Any],
        *,
        model: str | None = None,
        max_tokens: int = 1600,
    ) -> dict[str, Any]:
        response = await self.chat(
            model=model or self.default_model,
            system_prompt=JSON_SYSTEM_PROMPT,
            user_prompt=f"{prompt}\n\nJSON contract:\n{json.dumps(contract, indent=2)}",
            max_tokens=max_tokens,
            json_mode=True,
        )
        data = parse_json_object(response.text)
        if data is None:
            logger.debug("Unparseable LLM output: %s", response.text[:300])
            raise StructuredOutputError("LLM output is not a JSON object", context={"preview": response.text[:200]})
        return data


def parse_json_object(text: str) -> dict[str, Any] | None:
    """Try to parse a JSON object from mixed model output."""

    if not text.strip():
        return None

    try:
        data = json.loads(text)
        if isinstance(data, dict):
            return data
    except json.JSONDecodeError:
        pass

    match = re.search(r"\{[\s\S]*\}", text)
    if not match:
        return None

    candidate = match.group(0)
    try:
        data = json.loads(candidate)
        if isinstance(data, dict):
            return data
    except json.JSONDecodeError:
        return None

    return None


def restate_contract(prompt: str, attempt: int, attempts: int, error: str | None) -> str:
    """Re-prompt wording for a retry after a contract violation."""

    if attempt <= 1:
        return prompt
    reason = f" The previous answer was rejected: {error}." if error else ""
    return (
        f"{prompt}\n\nAttempt {attempt}/{attempts}.{reason} "
        "Return ONLY a JSON object that strictly satisfies the contract, with every field present."
    )
