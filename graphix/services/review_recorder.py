from __future__ import annotations

import asyncio
import logging
import weakref
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from graphix.models.project import GeneratedImage
from graphix.models.review import ImageReview
from graphix.schemas.review import ReviewIssue
from graphix.services.review_store import ReviewStore

logger = logging.getLogger(__name__)


class ReviewRecorder:
    """评审记录的唯一写入方。

    迭代号按分镜单调递增：读取当前最大值并写入 max + 1 的过程在分镜级别的
    asyncio.Lock 内完成。锁只在单进程内有效，没有任务持有时自动回收。
    """

    def __init__(self, store: ReviewStore):
        self.store = store
        self._locks: weakref.WeakValueDictionary[int, asyncio.Lock] = weakref.WeakValueDictionary()

    def _panel_lock(self, panel_id: int) -> asyncio.Lock:
        lock = self._locks.get(panel_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[panel_id] = lock
        return lock

    @asynccontextmanager
    async def next_iteration(self, panel_id: int) -> AsyncIterator[int]:
        """持有分镜锁期间给出下一个迭代号，记录必须在退出前写入"""
        lock = self._panel_lock(panel_id)
        async with lock:
            previous = await self.store.get_max_iteration(panel_id)
            yield previous + 1

    async def record(
        self,
        *,
        image: GeneratedImage,
        score: float,
        status: str,
        issues: list[ReviewIssue],
        recommendation: str,
        iteration: int,
        reviewed_by: str = "ai",
        previous_review_id: int | None = None,
        human_feedback: str | None = None,
        regeneration_hints: str | None = None,
    ) -> ImageReview:
        review = ImageReview(
            generated_image_id=image.id,
            panel_id=image.panel_id,
            score=score,
            status=status,
            issues=[issue.model_dump(exclude_none=True) for issue in issues],
            recommendation=recommendation,
            iteration=iteration,
            previous_review_id=previous_review_id,
            reviewed_by=reviewed_by,
            human_feedback=human_feedback,
            regeneration_hints=regeneration_hints,
        )
        saved = await self.store.save_review(review)
        logger.info(
            "Recorded %s review %s for image %s (panel %s): iteration=%s score=%.2f status=%s action=%s",
            reviewed_by,
            saved.id,
            image.id,
            image.panel_id,
            iteration,
            score,
            status,
            recommendation,
        )
        return saved

    async def mark_for_human_review(self, image_id: int, review_id: int | None) -> None:
        if review_id is not None:
            await self.store.update_review_status(review_id, "human_review")
        await self.store.update_image_status(image_id, "human_review")
