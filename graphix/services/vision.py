from __future__ import annotations

import asyncio
import base64
import logging
import math
from pathlib import Path
from typing import Any, Protocol

import anthropic

from graphix.config import Settings
from graphix.prompts.review import build_analysis_prompt
from graphix.schemas.review import ISSUE_SEVERITIES, ISSUE_TYPES, ImageAnalysis, PanelContext, ReviewIssue
from graphix.services.http import RETRYABLE_STATUS, post_json_with_retry
from graphix.utils import extract_json

logger = logging.getLogger(__name__)

_MEDIA_TYPES = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".webp": "image/webp",
}


class VisionScorer(Protocol):
    """图片与提示词的符合度打分。失败时抛出异常"""

    async def analyze(
        self,
        image_path: str,
        prompt: str,
        context: PanelContext | None = None,
    ) -> ImageAnalysis: ...


def _score_value(value: Any) -> float:
    try:
        score = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(score):
        return 0.0
    return max(0.0, min(1.0, score))


def _normalize_issues(raw: Any) -> list[ReviewIssue]:
    if not isinstance(raw, list):
        return []

    issues: list[ReviewIssue] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        issue_type = item.get("type")
        severity = item.get("severity")
        suggested_fix = item.get("suggestedFix") or item.get("suggested_fix")
        issues.append(
            ReviewIssue(
                type=issue_type if issue_type in ISSUE_TYPES else "other",
                description=str(item.get("description") or "Unknown issue"),
                severity=severity if severity in ISSUE_SEVERITIES else "major",
                suggested_fix=str(suggested_fix) if suggested_fix else None,
            )
        )
    return issues


def _string_list(raw: Any) -> list[str]:
    if not isinstance(raw, list):
        return []
    return [str(item) for item in raw]


def parse_analysis_response(raw_response: str) -> ImageAnalysis:
    """解析视觉模型的 JSON 输出；无法解析时返回 0.5 分并建议人工复核"""
    try:
        data = extract_json(raw_response)
    except ValueError as exc:
        logger.warning("Failed to parse vision analysis response: %s", exc)
        return ImageAnalysis(
            adherence_score=0.5,
            issues=[
                ReviewIssue(
                    type="other",
                    description="Failed to parse AI analysis response",
                    severity="major",
                    suggested_fix="Try regenerating with a clearer prompt",
                )
            ],
            quality_notes="Analysis parsing failed - manual review recommended",
            raw_response=raw_response,
        )

    score = data.get("adherenceScore", data.get("adherence_score"))
    return ImageAnalysis(
        adherence_score=_score_value(score),
        found_elements=_string_list(data.get("foundElements", data.get("found_elements"))),
        missing_elements=_string_list(data.get("missingElements", data.get("missing_elements"))),
        issues=_normalize_issues(data.get("issues")),
        quality_notes=data.get("qualityNotes") or data.get("quality_notes") or None,
        raw_response=raw_response,
    )


async def _read_image_base64(image_path: str) -> str:
    data = await asyncio.to_thread(Path(image_path).read_bytes)
    return base64.b64encode(data).decode("utf-8")


class OllamaVisionScorer:
    """Ollama 视觉模型（llava 等），通过 /api/generate 调用"""

    def __init__(self, settings: Settings, *, max_retries: int = 3):
        self.settings = settings
        self.max_retries = max_retries

    async def analyze(
        self,
        image_path: str,
        prompt: str,
        context: PanelContext | None = None,
    ) -> ImageAnalysis:
        payload = {
            "model": self.settings.ollama_vision_model,
            "prompt": build_analysis_prompt(prompt, context),
            "images": [await _read_image_base64(image_path)],
            "stream": False,
            "options": {"temperature": 0.3},
        }
        url = f"{self.settings.ollama_base_url.rstrip('/')}/api/generate"
        data = await post_json_with_retry(
            url,
            payload,
            timeout=self.settings.request_timeout_s,
            max_retries=self.max_retries,
            service="Ollama vision",
        )
        return parse_analysis_response(str(data.get("response") or ""))


class ClaudeVisionScorer:
    """Claude Vision（Anthropic Messages API，图片以 base64 内容块发送）"""

    def __init__(self, settings: Settings, *, max_retries: int = 3):
        self.settings = settings
        self.max_retries = max_retries
        self._client: anthropic.AsyncAnthropic | None = None

    def _get_client(self) -> anthropic.AsyncAnthropic:
        if self._client is not None:
            return self._client

        api_key = self.settings.anthropic_credentials()
        if not api_key:
            raise ValueError("Anthropic credentials missing: set `anthropic_api_key` or `anthropic_auth_token`.")

        kwargs: dict[str, Any] = {
            "api_key": api_key,
            "timeout": self.settings.request_timeout_s,
            # 外层自己做重试
            "max_retries": 0,
        }
        if self.settings.anthropic_auth_token:
            # 兼容使用 Bearer Token 鉴权的中转站
            kwargs["default_headers"] = {"Authorization": f"Bearer {self.settings.anthropic_auth_token}"}
        if self.settings.anthropic_base_url:
            kwargs["base_url"] = self.settings.anthropic_base_url

        self._client = anthropic.AsyncAnthropic(**kwargs)
        return self._client

    def _is_retryable_error(self, exc: Exception) -> bool:
        if isinstance(exc, (anthropic.RateLimitError, anthropic.APIConnectionError, anthropic.APITimeoutError)):
            return True
        status_code = getattr(exc, "status_code", None)
        return isinstance(status_code, int) and status_code in RETRYABLE_STATUS

    async def analyze(
        self,
        image_path: str,
        prompt: str,
        context: PanelContext | None = None,
    ) -> ImageAnalysis:
        client = self._get_client()
        media_type = _MEDIA_TYPES.get(Path(image_path).suffix.lower(), "image/png")
        messages = [
            {
                "role": "user",
                "content": [
                    {
                        "type": "image",
                        "source": {
                            "type": "base64",
                            "media_type": media_type,
                            "data": await _read_image_base64(image_path),
                        },
                    },
                    {"type": "text", "text": build_analysis_prompt(prompt, context)},
                ],
            }
        ]

        delay_s = 0.5
        for attempt in range(self.max_retries + 1):
            try:
                message = await client.messages.create(
                    model=self.settings.claude_vision_model,
                    max_tokens=2048,
                    messages=messages,
                )
                break
            except Exception as exc:
                if attempt >= self.max_retries or not self._is_retryable_error(exc):
                    raise
                await asyncio.sleep(delay_s)
                delay_s = min(delay_s * 2, 8.0)

        text = "".join(
            getattr(block, "text", "") for block in message.content if getattr(block, "type", None) == "text"
        )
        if not text:
            raise RuntimeError("Unexpected response type from Claude Vision")
        return parse_analysis_response(text)


class FallbackVisionScorer:
    """先用主评审器，失败后切换到备用评审器"""

    def __init__(self, primary: VisionScorer, fallback: VisionScorer):
        self.primary = primary
        self.fallback = fallback

    async def analyze(
        self,
        image_path: str,
        prompt: str,
        context: PanelContext | None = None,
    ) -> ImageAnalysis:
        try:
            return await self.primary.analyze(image_path, prompt, context)
        except Exception as exc:
            logger.warning("Primary vision scorer failed: %s. Falling back to %s.", exc, type(self.fallback).__name__)
            return await self.fallback.analyze(image_path, prompt, context)


def create_vision_scorer(settings: Settings) -> VisionScorer:
    """根据配置选择视觉评审实现"""
    provider = settings.vision_provider.strip().lower()

    if provider == "claude":
        return ClaudeVisionScorer(settings)
    if provider != "ollama":
        raise ValueError(f"Unsupported vision provider: {settings.vision_provider}")

    ollama = OllamaVisionScorer(settings)
    if settings.anthropic_credentials():
        return FallbackVisionScorer(ollama, ClaudeVisionScorer(settings))
    return ollama
