from __future__ import annotations

import asyncio
import logging

from graphix.exceptions import NotFoundError
from graphix.schemas.review import (
    BatchError,
    BatchReviewOptions,
    BatchReviewResult,
    ReviewConfig,
    ReviewResult,
)
from graphix.services.review_loop import AutonomousReviewLoop
from graphix.services.review_store import ReviewStore
from graphix.services.reviewer import ImageReviewer

logger = logging.getLogger(__name__)

# 评审状态 → 汇总字段
STATUS_BUCKETS = {
    "approved": "approved",
    "needs_work": "needs_work",
    "rejected": "rejected",
    "human_review": "pending_human",
}


class BatchReviewOrchestrator:
    """批量评审故事板内的所有分镜，单个分镜失败不影响其他分镜"""

    def __init__(
        self,
        store: ReviewStore,
        reviewer: ImageReviewer,
        loop: AutonomousReviewLoop,
        *,
        default_config: ReviewConfig,
        default_concurrency: int = 3,
    ):
        self.store = store
        self.reviewer = reviewer
        self.loop = loop
        self.default_config = default_config
        self.default_concurrency = default_concurrency

    async def review_storyboard(
        self,
        storyboard_id: int,
        options: BatchReviewOptions | None = None,
    ) -> BatchReviewResult:
        opts = options or BatchReviewOptions()
        cfg = self.default_config.merged(opts.config)
        concurrency = opts.concurrency or self.default_concurrency

        storyboard = await self.store.get_storyboard(storyboard_id)
        if storyboard is None:
            raise NotFoundError(f"Storyboard {storyboard_id} not found")

        panel_ids = await self._select_panels(storyboard_id, opts)
        logger.info(
            "Batch review of storyboard %s: %d panels (mode=%s, parallel=%s, concurrency=%s)",
            storyboard_id,
            len(panel_ids),
            cfg.mode,
            opts.parallel,
            concurrency,
        )

        results: dict[int, ReviewResult] = {}
        errors: list[BatchError] = []

        async def run_one(panel_id: int) -> None:
            try:
                results[panel_id] = await self._review_panel(panel_id, cfg)
            except Exception as exc:
                logger.warning("Batch review failed for panel %s: %s", panel_id, exc)
                errors.append(BatchError(panel_id=panel_id, error=str(exc)))

        if opts.parallel:
            for start in range(0, len(panel_ids), concurrency):
                chunk = panel_ids[start : start + concurrency]
                await asyncio.gather(*(run_one(panel_id) for panel_id in chunk))
        else:
            for panel_id in panel_ids:
                await run_one(panel_id)

        counts = {bucket: 0 for bucket in STATUS_BUCKETS.values()}
        for result in results.values():
            counts[STATUS_BUCKETS[result.status]] += 1

        return BatchReviewResult(
            total=len(results),
            attempted=len(panel_ids),
            results={panel_id: results[panel_id] for panel_id in panel_ids if panel_id in results},
            errors=errors,
            **counts,
        )

    async def _select_panels(self, storyboard_id: int, opts: BatchReviewOptions) -> list[int]:
        panels = await self.store.list_panels(storyboard_id)
        # 没有候选图片的分镜属于“尚未就绪”，不计入结果也不算错误
        with_images = await self.store.get_panel_ids_with_images(storyboard_id)
        panel_ids = [panel.id for panel in panels if panel.id in with_images]

        if opts.only_pending:
            approved = await self.store.get_approved_panel_ids(storyboard_id)
            panel_ids = [panel_id for panel_id in panel_ids if panel_id not in approved]

        if opts.limit:
            panel_ids = panel_ids[: opts.limit]
        return panel_ids

    async def _review_panel(self, panel_id: int, cfg: ReviewConfig) -> ReviewResult:
        if cfg.mode == "unattended":
            auto = await self.loop.run_until_accepted(panel_id, cfg)
            return auto.iterations[-1]
        return await self.reviewer.review_panel(panel_id, config=cfg)
