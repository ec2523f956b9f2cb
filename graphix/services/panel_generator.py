from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from graphix.config import Settings
from graphix.models.project import GeneratedImage
from graphix.services.image import ImageService
from graphix.services.review_store import ReviewStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RegenerationResult:
    success: bool
    generated_image: GeneratedImage | None = None
    error: str | None = None


class Regenerator(Protocol):
    """按新的随机种子为分镜重新生成一张候选图片。

    预期内的失败通过 success=False 返回，不抛出异常。
    """

    async def regenerate(
        self,
        panel_id: int,
        current_image_id: int,
        *,
        seed: int,
        prompt_hints: list[str] | None = None,
    ) -> RegenerationResult: ...


def apply_prompt_hints(prompt: str, hints: list[str] | None) -> str:
    if not hints:
        return prompt
    base = prompt.rstrip().rstrip(".")
    return f"{base}. {'. '.join(hint.strip().rstrip('.') for hint in hints)}."


class PanelRegenerator:
    """基于当前图片的提示词重新生成，并保存为该分镜的新候选图片"""

    def __init__(self, settings: Settings, store: ReviewStore, image_service: ImageService):
        self.settings = settings
        self.store = store
        self.image_service = image_service

    def _image_dir(self) -> Path:
        return Path(self.settings.static_dir) / "images"

    async def regenerate(
        self,
        panel_id: int,
        current_image_id: int,
        *,
        seed: int,
        prompt_hints: list[str] | None = None,
    ) -> RegenerationResult:
        current = await self.store.get_image(current_image_id)
        if current is None:
            return RegenerationResult(success=False, error=f"Image {current_image_id} not found")
        if current.panel_id != panel_id:
            return RegenerationResult(
                success=False,
                error=f"Image {current_image_id} does not belong to panel {panel_id}",
            )

        prompt = apply_prompt_hints(current.prompt, prompt_hints)
        try:
            url = await self.image_service.generate_url(
                prompt=prompt,
                size=f"{current.width}x{current.height}",
                seed=seed,
                negative_prompt=current.negative_prompt,
            )
            dest = self._image_dir() / f"panel_{panel_id}_{uuid.uuid4().hex[:12]}.png"
            await self.image_service.download(url, dest)
        except Exception as exc:
            logger.warning("Regeneration failed for panel %s: %s", panel_id, exc, exc_info=True)
            return RegenerationResult(success=False, error=str(exc))

        image = await self.store.create_image(
            GeneratedImage(
                panel_id=panel_id,
                local_path=str(dest),
                cloud_url=url if url.startswith(("http://", "https://")) else None,
                seed=seed,
                prompt=prompt,
                negative_prompt=current.negative_prompt,
                model=self.settings.image_model,
                width=current.width,
                height=current.height,
                is_selected=False,
                review_status="pending",
            )
        )
        logger.info("Regenerated panel %s: new image %s (seed=%s)", panel_id, image.id, seed)
        return RegenerationResult(success=True, generated_image=image)
