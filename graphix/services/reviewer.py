from __future__ import annotations

import asyncio
import logging
import math

from graphix.exceptions import AppException, CollaboratorError, NoCandidatesError, NotFoundError
from graphix.models.project import GeneratedImage, Panel
from graphix.models.review import ImageReview
from graphix.schemas.review import ImageAnalysis, PanelContext, ReviewConfig, ReviewIssue, ReviewResult
from graphix.services.review_policy import classify_score, plan_action
from graphix.services.review_recorder import ReviewRecorder
from graphix.services.review_store import ReviewStore
from graphix.services.vision import VisionScorer

logger = logging.getLogger(__name__)


def select_candidate(images: list[GeneratedImage]) -> GeneratedImage | None:
    """优先选中的图片，否则取第一张（列表按最新在前）"""
    for image in images:
        if image.is_selected:
            return image
    return images[0] if images else None


def issues_from_record(review: ImageReview) -> list[ReviewIssue]:
    return [ReviewIssue.model_validate(item) for item in review.issues or []]


class ImageReviewer:
    """单张图片评审：视觉打分 → 分级 → 决策 → 记录"""

    def __init__(
        self,
        store: ReviewStore,
        recorder: ReviewRecorder,
        scorer: VisionScorer,
        *,
        default_config: ReviewConfig,
        scoring_timeout_s: float = 300.0,
    ):
        self.store = store
        self.recorder = recorder
        self.scorer = scorer
        self.default_config = default_config
        self.scoring_timeout_s = scoring_timeout_s

    async def review_image(
        self,
        image_id: int,
        prompt: str | None = None,
        context: PanelContext | None = None,
        *,
        config: ReviewConfig | None = None,
    ) -> ReviewResult:
        cfg = config or self.default_config

        image = await self.store.get_image(image_id)
        if image is None:
            raise NotFoundError(f"Image {image_id} not found")

        review_prompt = prompt or image.prompt
        review_context = context if context is not None else await self._derive_context(image)

        analysis = await self._analyze(image, review_prompt, review_context)
        score = max(0.0, min(1.0, analysis.adherence_score))

        async with self.recorder.next_iteration(image.panel_id) as iteration:
            status = classify_score(score, cfg)
            recommendation = plan_action(analysis.issues, status, iteration - 1, cfg)
            review = await self.recorder.record(
                image=image,
                score=score,
                status=status,
                issues=analysis.issues,
                recommendation=recommendation,
                iteration=iteration,
            )

        return ReviewResult(
            image_id=image.id,
            panel_id=image.panel_id,
            score=score,
            status=status,
            issues=analysis.issues,
            recommendation=recommendation,
            iteration=iteration,
            review_id=review.id,
        )

    async def review_panel(self, panel_id: int, *, config: ReviewConfig | None = None) -> ReviewResult:
        panel = await self.store.get_panel(panel_id)
        if panel is None:
            raise NotFoundError(f"Panel {panel_id} not found")

        image = select_candidate(await self.store.list_panel_images(panel_id))
        if image is None:
            raise NoCandidatesError(f"Panel {panel_id} has no generated images to review")

        return await self.review_image(image.id, config=config)

    async def get_latest_review(self, image_id: int) -> ImageReview | None:
        return await self.store.get_latest_review(image_id)

    async def get_image_review_history(self, image_id: int) -> list[ImageReview]:
        return await self.store.list_image_reviews(image_id)

    async def get_panel_review_history(self, panel_id: int) -> list[ImageReview]:
        return await self.store.list_panel_reviews(panel_id)

    async def _analyze(self, image: GeneratedImage, prompt: str, context: PanelContext) -> ImageAnalysis:
        # 打分失败时直接抛出，不写入任何记录
        try:
            analysis = await asyncio.wait_for(
                self.scorer.analyze(image.local_path, prompt, context),
                timeout=self.scoring_timeout_s,
            )
        except asyncio.TimeoutError as exc:
            raise CollaboratorError(
                f"Vision scoring timed out after {self.scoring_timeout_s:.0f}s",
                details={"image_id": image.id},
            ) from exc
        except AppException:
            raise
        except Exception as exc:
            logger.warning("Vision scoring failed for image %s: %s", image.id, exc)
            raise CollaboratorError(
                f"Vision scoring failed: {exc}",
                details={"image_id": image.id},
            ) from exc

        if not math.isfinite(analysis.adherence_score):
            raise CollaboratorError(
                f"Vision scoring returned a non-finite score: {analysis.adherence_score}",
                details={"image_id": image.id},
            )
        return analysis

    async def _derive_context(self, image: GeneratedImage) -> PanelContext:
        panel: Panel | None = await self.store.get_panel(image.panel_id)
        if panel is None:
            return PanelContext()

        direction = panel.direction or {}
        character_ids = list(panel.character_ids or [])
        characters = await self.store.get_characters(character_ids)
        return PanelContext(
            description=panel.description or None,
            character_ids=character_ids,
            character_names=[character.name for character in characters] or None,
            mood=direction.get("mood"),
            camera_angle=direction.get("camera_angle"),
        )
