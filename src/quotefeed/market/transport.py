"""Rate-limited async HTTP transport with bounded retry."""

from __future__ import annotations

import asyncio
import logging
import random

import httpx
from aiolimiter import AsyncLimiter

from quotefeed.core.config import HttpConfig
from quotefeed.core.exceptions import RateLimitError, TransportError

logger = logging.getLogger(__name__)

# The upstream serves GBK text without declaring a charset
_FALLBACK_ENCODING = "gbk"
_RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504})


class QuoteTransport:
    """Shared HTTP transport for every upstream call.

    One ``httpx.AsyncClient`` (and its connection pool) is shared by all
    concurrent requests. Use via ``async with QuoteTransport(...) as t:``.

    Retry policy (applied uniformly):
        - Connection errors, timeouts, HTTP 429 and 5xx are retried up to
          ``max_retries`` times.
        - Delay is ``retry_interval * backoff_factor ** attempt`` plus up to
          ``retry_jitter`` of that again at random. A numeric Retry-After on
          429 overrides it.
        - Other HTTP errors raise immediately.
    """

    def __init__(
        self,
        config: HttpConfig,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config
        self._limiter = AsyncLimiter(max_rate=config.rate_limit, time_period=1.0)
        self._client = client or httpx.AsyncClient(
            headers={"User-Agent": config.user_agent},
            timeout=httpx.Timeout(config.request_timeout),
            follow_redirects=True,
        )

    async def __aenter__(self) -> QuoteTransport:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    def backoff_delay(self, attempt: int) -> float:
        """Seconds to wait before retry number ``attempt`` (0-based)."""
        base = self._config.retry_interval * self._config.backoff_factor**attempt
        return base + random.uniform(0, base * self._config.retry_jitter)

    async def get_text(
        self,
        url: str,
        params: dict[str, str] | None = None,
    ) -> str:
        """GET ``url`` and return the decoded body.

        Raises:
            RateLimitError: HTTP 429 after retry exhaustion.
            TransportError: Any other failure after retry exhaustion, or a
                non-retryable HTTP status.
        """
        response = await self._request(url, params)
        return self._decode(response)

    async def _request(
        self,
        url: str,
        params: dict[str, str] | None,
    ) -> httpx.Response:
        max_retries = self._config.max_retries

        for attempt in range(max_retries + 1):
            try:
                await self._limiter.acquire()
                response = await self._client.get(url, params=params)
            except httpx.HTTPError as e:
                if attempt < max_retries:
                    delay = self.backoff_delay(attempt)
                    logger.warning(
                        "%s on %s, retrying in %.2fs (attempt %d/%d)",
                        type(e).__name__, url, delay, attempt + 1, max_retries,
                    )
                    await asyncio.sleep(delay)
                    continue
                raise TransportError(
                    f"Request failed after {max_retries} retries: {url}",
                    context={"url": url, "error": str(e) or type(e).__name__},
                ) from e

            if response.status_code == 200:
                return response

            if response.status_code in _RETRYABLE_STATUS:
                if attempt < max_retries:
                    delay = self._retry_after(response) or self.backoff_delay(attempt)
                    logger.warning(
                        "HTTP %d on %s, retrying in %.2fs (attempt %d/%d)",
                        response.status_code, url, delay, attempt + 1, max_retries,
                    )
                    await asyncio.sleep(delay)
                    continue
                if response.status_code == 429:
                    raise RateLimitError(
                        f"Rate limit exceeded after {max_retries} retries: {url}",
                        context={
                            "url": url,
                            "status_code": 429,
                            "retry_after": self._retry_after(response),
                        },
                    )
                raise TransportError(
                    f"Server error {response.status_code} after retries: {url}",
                    context={"url": url, "status_code": response.status_code},
                )

            raise TransportError(
                f"HTTP {response.status_code} from {url}",
                context={"url": url, "status_code": response.status_code},
            )

        # Unreachable: every iteration returns, continues or raises
        raise TransportError(
            f"Request failed after all retries: {url}",
            context={"url": url},
        )

    @staticmethod
    def _retry_after(response: httpx.Response) -> float | None:
        raw = response.headers.get("Retry-After")
        if raw is None:
            return None
        try:
            return max(float(raw), 0.0)
        except ValueError:
            return None

    @staticmethod
    def _decode(response: httpx.Response) -> str:
        if response.charset_encoding:
            return response.text
        return response.content.decode(_FALLBACK_ENCODING, errors="replace")
