import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import httpx

logger = logging.getLogger("uvicorn.error")

ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_MODEL = "claude-haiku-4-5-20251001"
# Interactive turns are latency bound; background turns can outlast a full rate-limit window.
DEFAULT_RETRY_DELAYS: Sequence[float] = (2.0, 5.0, 15.0)
BACKGROUND_RETRY_DELAYS: Sequence[float] = (5.0, 15.0, 30.0, 60.0)


class ModelServiceError(RuntimeError):
    def __init__(self, message: str, status_code: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class RateLimitedError(ModelServiceError):
    pass


class CredentialsError(ModelServiceError):
    pass


class AnthropicClient:
    """Messages API client with rate-limit retries."""

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str = "https://api.anthropic.com/v1",
        default_model: Optional[str] = None,
        max_tokens: int = 4096,
        retry_delays: Sequence[float] = DEFAULT_RETRY_DELAYS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.default_model = default_model or DEFAULT_MODEL
        self.max_tokens = max_tokens
        self.retry_delays = list(retry_delays)
        self.sleep = sleep
        self.client = httpx.AsyncClient(timeout=120)

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-api-key": self.api_key or "",
            "anthropic-version": ANTHROPIC_VERSION,
        }

    def _extract_error_detail(self, response: httpx.Response) -> str:
        try:
            data = response.json()
            if isinstance(data, dict):
                return json.dumps(data, ensure_ascii=True)
        except Exception:
            pass
        try:
            return response.text
        except Exception:
            return ""

    async def _post_with_retry(self, payload: Dict[str, Any], retry_delays: Sequence[float]) -> httpx.Response:
        url = f"{self.base_url}/messages"
        attempts = len(retry_delays) + 1
        for attempt in range(attempts):
            resp = await self.client.post(url, json=payload, headers=self._headers())
            if resp.status_code == 429 and attempt < len(retry_delays):
                delay = retry_delays[attempt]
                logger.info("Model API rate limited (attempt %s/%s), retrying in %ss", attempt + 1, attempts, delay)
                await self.sleep(delay)
                continue
            if resp.is_success:
                return resp
            detail = self._extract_error_detail(resp)
            if resp.status_code == 429:
                raise RateLimitedError(
                    "Rate limited by the model API after retries. Please wait a moment and try again.",
                    status_code=429,
                    body=detail,
                )
            if resp.status_code == 401:
                raise CredentialsError(
                    "Invalid Anthropic API key. Check your ANTHROPIC_API_KEY configuration.",
                    status_code=401,
                    body=detail,
                )
            raise ModelServiceError(
                f"Model API error ({resp.status_code}): {detail}", status_code=resp.status_code, body=detail
            )
        raise ModelServiceError("Model API retry loop exited without a response")

    async def create_message(
        self,
        *,
        system: str,
        messages: List[Dict[str, Any]],
        model: Optional[str] = None,
        tools: Optional[List[Dict[str, Any]]] = None,
        max_tokens: Optional[int] = None,
        retry_delays: Optional[Sequence[float]] = None,
    ) -> Dict[str, Any]:
        if not self.api_key:
            raise CredentialsError("ANTHROPIC_API_KEY is not configured")
        payload: Dict[str, Any] = {
            "model": model or self.default_model,
            "max_tokens": max_tokens or self.max_tokens,
            "system": system,
            "messages": messages,
        }
        if tools:
            payload["tools"] = tools
        delays = self.retry_delays if retry_delays is None else list(retry_delays)
        resp = await self._post_with_retry(payload, delays)
        data = resp.json()
        error = data.get("error") if isinstance(data, dict) else None
        if error:
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise ModelServiceError(f"Model API error: {message}", status_code=resp.status_code, body=json.dumps(data))
        return data

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
