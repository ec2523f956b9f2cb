from __future__ import annotations

import asyncio
import base64
import logging
from pathlib import Path
from typing import Any

import httpx

from graphix.config import Settings
from graphix.services.http import post_json_with_retry

logger = logging.getLogger(__name__)


class ImageService:
    """图像生成服务（OpenAI 兼容的 /images/generations 接口）"""

    def __init__(self, settings: Settings, *, max_retries: int = 3):
        self.settings = settings
        self.max_retries = max_retries

    @property
    def endpoint_url(self) -> str:
        path = "/" + self.settings.image_endpoint.lstrip("/")
        return self.settings.image_base_url.rstrip("/") + path

    async def generate(
        self,
        *,
        prompt: str,
        size: str = "1024x1024",
        n: int = 1,
        seed: int | None = None,
        negative_prompt: str | None = None,
        response_format: str = "url",
        **extra: Any,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.settings.image_model,
            "prompt": prompt,
            "size": size,
            "n": n,
            "response_format": response_format,
            **extra,
        }
        if seed is not None:
            payload["seed"] = seed
        if negative_prompt:
            payload["negative_prompt"] = negative_prompt

        return await post_json_with_retry(
            self.endpoint_url,
            payload,
            timeout=self.settings.request_timeout_s,
            headers=self.settings.image_headers(),
            max_retries=self.max_retries,
            service="Image generation",
        )

    async def generate_url(self, *, prompt: str, size: str = "1024x1024", **kwargs: Any) -> str:
        """生成一张图片并返回其 URL；只返回 base64 时转成 data: URL"""
        data = await self.generate(prompt=prompt, size=size, **kwargs)
        items = data.get("data")
        first = items[0] if isinstance(items, list) and items and isinstance(items[0], dict) else {}

        url = first.get("url")
        if isinstance(url, str) and url:
            return url
        b64 = first.get("b64_json")
        if isinstance(b64, str) and b64:
            return f"data:image/png;base64,{b64}"
        raise RuntimeError(f"Image API response missing URL: {data}")

    async def download(self, url: str, dest: Path) -> Path:
        """把生成结果保存到本地文件（支持 http(s) 与 data: URL）"""
        dest.parent.mkdir(parents=True, exist_ok=True)

        if url.startswith("data:"):
            content = base64.b64decode(url.partition(",")[2])
        else:
            async with httpx.AsyncClient(timeout=self.settings.request_timeout_s, follow_redirects=True) as client:
                res = await client.get(url)
                res.raise_for_status()
                content = res.content

        await asyncio.to_thread(dest.write_bytes, content)
        logger.info("Saved generated image to %s (%d bytes)", dest, len(content))
        return dest
