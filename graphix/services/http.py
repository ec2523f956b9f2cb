from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = frozenset({408, 429, 500, 502, 503, 504})
MAX_BACKOFF_S = 8.0


async def post_json_with_retry(
    url: str,
    payload: dict[str, Any],
    *,
    timeout: float,
    headers: dict[str, str] | None = None,
    max_retries: int = 3,
    service: str = "HTTP",
) -> dict[str, Any]:
    """POST JSON，对超时、网络错误和 408/429/5xx 做指数退避重试。

    其他 4xx 不重试。重试耗尽后抛出 RuntimeError，保留最后一次异常作为 __cause__。
    """
    delay_s = 0.5
    last_exc: Exception | None = None

    async with httpx.AsyncClient(timeout=timeout) as client:
        for attempt in range(max_retries + 1):
            try:
                res = await client.post(url, headers=headers, json=payload)
                res.raise_for_status()
                return res.json()
            except (httpx.TimeoutException, httpx.NetworkError, httpx.HTTPStatusError) as exc:
                last_exc = exc
                status = exc.response.status_code if isinstance(exc, httpx.HTTPStatusError) else None
                if attempt >= max_retries or (status is not None and status not in RETRYABLE_STATUS):
                    break
                logger.warning(
                    "%s request to %s failed (attempt %d/%d): %s",
                    service,
                    url,
                    attempt + 1,
                    max_retries + 1,
                    exc,
                )
                await asyncio.sleep(delay_s)
                delay_s = min(delay_s * 2, MAX_BACKOFF_S)

    raise RuntimeError(f"{service} request failed after retries: {last_exc}") from last_exc
