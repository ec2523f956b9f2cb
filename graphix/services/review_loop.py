from __future__ import annotations

import asyncio
import logging
import random

from graphix.exceptions import NoCandidatesError, NotFoundError
from graphix.models.project import GeneratedImage
from graphix.schemas.review import AutoReviewResult, FinalImage, LoopOutcome, ReviewConfig, ReviewResult
from graphix.services.human_review import HumanReviewQueue
from graphix.services.panel_generator import RegenerationResult, Regenerator
from graphix.services.review_policy import build_regeneration_hints
from graphix.services.review_store import ReviewStore
from graphix.services.reviewer import ImageReviewer, select_candidate

logger = logging.getLogger(__name__)

MAX_SEED = 2147483647


class AutonomousReviewLoop:
    """评审 → 重新生成 的有界循环。

    每次调用最多进行 max_iterations 次打分，结束状态为 accepted / escalated /
    rejected / exhausted 之一；重新生成失败时以 regeneration_failed 提前结束，
    已记录的评审结果保持有效。
    """

    def __init__(
        self,
        store: ReviewStore,
        reviewer: ImageReviewer,
        human_queue: HumanReviewQueue,
        regenerator: Regenerator,
        *,
        default_config: ReviewConfig,
        regeneration_timeout_s: float = 480.0,
    ):
        self.store = store
        self.reviewer = reviewer
        self.human_queue = human_queue
        self.regenerator = regenerator
        self.default_config = default_config
        self.regeneration_timeout_s = regeneration_timeout_s

    async def run_until_accepted(self, panel_id: int, config: ReviewConfig | None = None) -> AutoReviewResult:
        cfg = config or self.default_config
        history: list[ReviewResult] = []
        attempt = 0

        while True:
            attempt += 1
            current = await self._current_image(panel_id)
            result = await self.reviewer.review_image(current.id, config=cfg)
            history.append(result)

            if result.status == "approved":
                return self._finish(current, history, "accepted", f"Image accepted with score {result.score:.2f}")

            if cfg.mode == "hitl" and result.score < cfg.pause_for_human_below:
                await self.human_queue.submit_for_human_review(current.id, result)
                return self._finish(
                    current,
                    history,
                    "escalated",
                    f"Submitted for human review (score: {result.score:.2f})",
                )

            if result.status == "rejected":
                descriptions = "; ".join(issue.description for issue in result.issues)
                return self._finish(current, history, "rejected", f"Image rejected: {descriptions}")

            if attempt >= cfg.max_iterations:
                return self._finish(
                    current,
                    history,
                    "exhausted",
                    f"Max iterations ({cfg.max_iterations}) reached without acceptance",
                )

            regen = await self._regenerate(panel_id, current.id, build_regeneration_hints(result.issues))
            if not regen.success or regen.generated_image is None:
                return self._finish(
                    current,
                    history,
                    "regeneration_failed",
                    f"Regeneration failed: {regen.error}",
                )
            await self.store.set_image_selected(regen.generated_image.id)

    async def _current_image(self, panel_id: int) -> GeneratedImage:
        panel = await self.store.get_panel(panel_id)
        if panel is None:
            raise NotFoundError(f"Panel {panel_id} not found")
        image = select_candidate(await self.store.list_panel_images(panel_id))
        if image is None:
            raise NoCandidatesError(f"Panel {panel_id} has no generated images to review")
        return image

    async def _regenerate(self, panel_id: int, image_id: int, hints: list[str]) -> RegenerationResult:
        seed = random.randrange(MAX_SEED)
        try:
            return await asyncio.wait_for(
                self.regenerator.regenerate(panel_id, image_id, seed=seed, prompt_hints=hints or None),
                timeout=self.regeneration_timeout_s,
            )
        except asyncio.TimeoutError:
            return RegenerationResult(
                success=False,
                error=f"timed out after {self.regeneration_timeout_s:.0f}s",
            )
        except Exception as exc:
            # 重新生成本身不重试，异常按失败处理
            logger.warning("Regenerator raised for panel %s: %s", panel_id, exc, exc_info=True)
            return RegenerationResult(success=False, error=str(exc))

    def _finish(
        self,
        image: GeneratedImage,
        history: list[ReviewResult],
        outcome: LoopOutcome,
        reason: str,
    ) -> AutoReviewResult:
        logger.info("Auto review of panel %s finished: %s (%s)", image.panel_id, outcome, reason)
        return AutoReviewResult(
            final_image=FinalImage(
                id=image.id,
                local_path=image.local_path,
                cloud_url=image.cloud_url,
                prompt=image.prompt,
                seed=image.seed,
            ),
            iterations=history,
            total_iterations=len(history),
            accepted=outcome == "accepted",
            outcome=outcome,
            reason=reason,
        )
