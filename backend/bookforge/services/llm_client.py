"""LLM client wrapper for an OpenAI-compatible chat completions API."""
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from typing import List, Dict, Optional, Any
import logging

import httpx
from httpx import ReadTimeout

from bookforge.core.config import Settings
from bookforge.infrastructure.resilience import async_retry
from bookforge.models.types import utc_now
from bookforge.shared_kernel.exceptions import ExternalServiceError, RateLimitError

logger = logging.getLogger(__name__)

RETRYABLE_TRANSPORT_ERRORS = (httpx.ConnectError, httpx.ConnectTimeout, httpx.RemoteProtocolError)


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> Optional[datetime]:
    """Turn a Retry-After header (seconds or HTTP date) into a naive UTC reset time."""
    if not value:
        return None
    now = now or utc_now()
    value = value.strip()
    if value.isdigit():
        return now + timedelta(seconds=int(value))
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _is_rate_limit_body(response: httpx.Response) -> bool:
    try:
        body = response.json()
    except ValueError:
        return "rate limit" in response.text.lower()
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        if error.get("type") == "rate_limit_error":
            return True
        return "rate limit" in str(error.get("message", "")).lower()
    return False


class LLMClient:
    """Async client for chat completions."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        if settings is None:
            from bookforge.core.config import settings as default_settings

            settings = default_settings
        self.api_key = settings.LLM_API_KEY
        self.base_url = settings.LLM_API_BASE.rstrip("/")
        self.model = settings.LLM_MODEL
        self.timeout = settings.LLM_TIMEOUT
        self.max_retries = settings.LLM_MAX_RETRIES

    async def chat(
        self,
        messages: List[Dict[str, str]],
        temperature: float = 0.7,
        max_tokens: int = 2000,
        model: Optional[str] = None,
        response_format: Optional[Dict[str, Any]] = None,
        return_full: bool = False,
    ) -> Any:
        """Call chat completions and return the assistant content."""
        payload = {
            "model": model or self.model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if response_format:
            payload["response_format"] = response_format
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        try:
            response = await async_retry(
                self._post,
                payload,
                headers,
                retries=self.max_retries,
                backoff=1.0,
                exceptions=RETRYABLE_TRANSPORT_ERRORS,
            )
        except ReadTimeout:
            raise
        except httpx.HTTPError as exc:
            raise ExternalServiceError(
                "LLM provider connection error. Please retry in a moment.",
                details={"error": str(exc)},
            ) from exc

        if response.status_code == 429 or (response.status_code >= 400 and _is_rate_limit_body(response)):
            reset_at = parse_retry_after(response.headers.get("retry-after"))
            logger.warning("LLM provider rate limited the request (reset_at=%s)", reset_at)
            raise RateLimitError(
                "LLM provider rate limit reached",
                details={"status_code": response.status_code},
                reset_at=reset_at,
            )
        if response.status_code != 200:
            raise ExternalServiceError(
                f"LLM API error: {response.text}",
                details={"status_code": response.status_code},
            )

        result = response.json()
        message = result["choices"][0]["message"]
        if return_full:
            return message
        return message.get("content", "")

    async def _post(self, payload: Dict[str, Any], headers: Dict[str, str]) -> httpx.Response:
        timeout = httpx.Timeout(self.timeout, read=self.timeout)
        async with httpx.AsyncClient(timeout=timeout) as client:
            return await client.post(
                f"{self.base_url}/chat/completions",
                headers=headers,
                json=payload,
            )
