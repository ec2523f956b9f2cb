from __future__ import annotations

import logging

from graphix.exceptions import InvalidDecisionError, NotFoundError
from graphix.schemas.review import HumanDecision, ReviewQueueItem, ReviewResult
from graphix.services.review_recorder import ReviewRecorder
from graphix.services.review_store import ReviewStore
from graphix.services.reviewer import issues_from_record

logger = logging.getLogger(__name__)

# 人工决定 → (评审状态, 推荐动作)
DECISION_OUTCOMES: dict[str, tuple[str, str]] = {
    "approve": ("approved", "approve"),
    "reject": ("rejected", "human_rejected"),
    "regenerate": ("needs_work", "regenerate"),
}

# 没有 AI 评审记录时沿用的分数
DEFAULT_HUMAN_SCORE = 0.5


class HumanReviewQueue:
    def __init__(self, store: ReviewStore, recorder: ReviewRecorder):
        self.store = store
        self.recorder = recorder

    async def submit_for_human_review(self, image_id: int, ai_review: ReviewResult) -> None:
        """标记为待人工审核，重复提交结果不变"""
        await self.recorder.mark_for_human_review(image_id, ai_review.review_id)
        logger.info(
            "Image %s submitted for human review (score=%.2f, review=%s)",
            image_id,
            ai_review.score,
            ai_review.review_id,
        )

    async def get_queue(self, limit: int = 50, offset: int = 0) -> list[ReviewQueueItem]:
        rows = await self.store.list_human_review_queue(limit, offset)
        return [
            ReviewQueueItem(
                review_id=review.id,
                image_id=image.id,
                panel_id=image.panel_id,
                storyboard_id=storyboard_id,
                image_path=image.local_path,
                thumbnail_path=image.thumbnail_path,
                prompt=image.prompt,
                ai_score=review.score,
                ai_issues=issues_from_record(review),
                ai_recommendation=review.recommendation or "human_review",
                iteration=review.iteration,
                created_at=review.created_at,
            )
            for image, review, storyboard_id in rows
        ]

    async def record_human_decision(self, image_id: int, decision: HumanDecision) -> ReviewResult:
        image = await self.store.get_image(image_id)
        if image is None:
            raise NotFoundError(f"Image {image_id} not found")

        outcome = DECISION_OUTCOMES.get(decision.action)
        if outcome is None:
            raise InvalidDecisionError(
                f"Invalid action: {decision.action}",
                details={"allowed": sorted(DECISION_OUTCOMES)},
            )
        status, recommendation = outcome

        # 人工决定不重新打分，只沿用最近一次评审的分数与问题
        previous = await self.store.get_latest_review(image_id)
        score = previous.score if previous is not None else DEFAULT_HUMAN_SCORE
        issues = issues_from_record(previous) if previous is not None else []

        async with self.recorder.next_iteration(image.panel_id) as iteration:
            review = await self.recorder.record(
                image=image,
                score=score,
                status=status,
                issues=issues,
                recommendation=recommendation,
                iteration=iteration,
                reviewed_by="human",
                previous_review_id=previous.id if previous is not None else None,
                human_feedback=decision.feedback,
                regeneration_hints=decision.regeneration_hints,
            )

        return ReviewResult(
            image_id=image.id,
            panel_id=image.panel_id,
            score=score,
            status=status,
            issues=issues,
            recommendation=recommendation,
            iteration=iteration,
            review_id=review.id,
            human_feedback=decision.feedback,
        )
