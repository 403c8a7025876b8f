import asyncio
import json
from typing import Any, Dict, List, Optional

import httpx


class ChatCompletionError(RuntimeError):
    """A single chat-completion attempt failed; the message is the raw error text."""


def extract_message_content(data: Any) -> Optional[str]:
    if not isinstance(data, dict):
        return None
    choices = data.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return None
    message = choices[0].get("message")
    if not isinstance(message, dict):
        return None
    content = message.get("content")
    if isinstance(content, str) and content:
        return content
    # Reasoning models sometimes leave content empty and answer in the reasoning field.
    fallback = message.get("reasoning") or message.get("reasoning_content")
    if isinstance(fallback, str) and fallback:
        return fallback
    return None


class OpenRouterClient:
    def __init__(
        self,
        api_key: Optional[str],
        url: str = "https://openrouter.ai/api/v1/chat/completions",
        referer: Optional[str] = None,
        title: str = "Hugin Compose",
    ):
        self.api_key = api_key
        self.url = url
        self.referer = referer
        self.title = title
        self.client = httpx.AsyncClient(timeout=60)

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
            "X-Title": self.title,
        }
        if self.referer:
            headers["HTTP-Referer"] = self.referer
        return headers

    def _extract_error_detail(self, response: httpx.Response) -> str:
        try:
            data = response.json()
            if isinstance(data, dict):
                return json.dumps(data, ensure_ascii=True)
        except ValueError:
            pass
        return response.text

    async def chat_completion(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        temperature: float = 0.2,
        response_format: Optional[dict] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Issue exactly one request; every failure surfaces as ``ChatCompletionError``."""
        payload: Dict[str, Any] = {
            "model": model,
            "temperature": temperature,
            "messages": messages,
        }
        if response_format:
            # Some providers support JSON mode; others ignore it.
            payload["response_format"] = response_format
        try:
            resp = await asyncio.wait_for(
                self.client.post(self.url, json=payload, headers=self._headers()),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            raise ChatCompletionError(f"OpenRouter {model} timed out after {timeout}s")
        except httpx.RequestError as exc:
            raise ChatCompletionError(f"OpenRouter {model} request failed: {exc}")
        if resp.status_code < 200 or resp.status_code >= 300:
            detail = self._extract_error_detail(resp)
            raise ChatCompletionError(f"OpenRouter {model} error {resp.status_code}: {detail}")
        try:
            return resp.json()
        except ValueError:
            raise ChatCompletionError(f"OpenRouter {model} returned a non-JSON body")

    async def close(self) -> None:
        # Safe to call multiple times
        if not self.client.is_closed:
            await self.client.aclose()
