from __future__ import annotations

from fastapi import APIRouter, Query, status

from graphix.api.deps import ReviewEngineDep
from graphix.exceptions import AppException, NotFoundError
from graphix.schemas.review import (
    AutoReviewResponse,
    BatchResultItem,
    BatchResultSummary,
    BatchReviewRequest,
    BatchReviewResponse,
    ConfigOverrideRequest,
    HumanDecision,
    HumanDecisionResponse,
    HumanFeedbackRequest,
    ImageReviewRead,
    IterationSummary,
    PanelHistoryResponse,
    ReviewConfig,
    ReviewImageRequest,
    ReviewMode,
    ReviewQueueResponse,
    ReviewResult,
)
from graphix.services.review_engine import ReviewEngine

router = APIRouter()

DECISION_MESSAGES = {
    "approve": "Image approved",
    "reject": "Image rejected",
    "regenerate": "Regeneration requested",
}


async def _require_image(engine: ReviewEngine, image_id: int) -> None:
    if await engine.store.get_image(image_id) is None:
        raise NotFoundError(f"Image {image_id} not found")


# ============================================
# 单张图片 / 单个分镜
# ============================================


@router.post("/images/{image_id}", response_model=ReviewResult)
async def review_image(
    image_id: int,
    payload: ReviewImageRequest | None = None,
    engine: ReviewEngine = ReviewEngineDep,
):
    payload = payload or ReviewImageRequest()
    return await engine.reviewer.review_image(image_id, payload.prompt, payload.context)


@router.get("/images/{image_id}", response_model=ImageReviewRead)
async def get_latest_review(image_id: int, engine: ReviewEngine = ReviewEngineDep):
    review = await engine.reviewer.get_latest_review(image_id)
    if review is None:
        raise NotFoundError(f"No review found for image {image_id}")
    return review


@router.get("/images/{image_id}/history", response_model=list[ImageReviewRead])
async def get_image_history(image_id: int, engine: ReviewEngine = ReviewEngineDep):
    await _require_image(engine, image_id)
    return await engine.reviewer.get_image_review_history(image_id)


@router.post("/panels/{panel_id}", response_model=ReviewResult)
async def review_panel(panel_id: int, engine: ReviewEngine = ReviewEngineDep):
    return await engine.reviewer.review_panel(panel_id)


@router.post("/panels/{panel_id}/auto", response_model=AutoReviewResponse)
async def auto_review_panel(
    panel_id: int,
    payload: ConfigOverrideRequest | None = None,
    engine: ReviewEngine = ReviewEngineDep,
):
    config = engine.default_config.merged(payload.to_override() if payload else None)
    result = await engine.loop.run_until_accepted(panel_id, config)
    return AutoReviewResponse(
        **result.model_dump(),
        panel_id=panel_id,
        iteration_summary=[
            IterationSummary(
                iteration=item.iteration,
                score=item.score,
                status=item.status,
                recommendation=item.recommendation,
            )
            for item in result.iterations
        ],
    )


@router.get("/panels/{panel_id}/history", response_model=PanelHistoryResponse)
async def get_panel_history(panel_id: int, engine: ReviewEngine = ReviewEngineDep):
    if await engine.store.get_panel(panel_id) is None:
        raise NotFoundError(f"Panel {panel_id} not found")
    reviews = await engine.reviewer.get_panel_review_history(panel_id)
    return PanelHistoryResponse(
        panel_id=panel_id,
        latest_iteration=max((review.iteration for review in reviews), default=0),
        reviews=[ImageReviewRead.model_validate(review) for review in reviews],
    )


# ============================================
# 故事板批量评审
# ============================================


async def _run_batch(
    engine: ReviewEngine,
    storyboard_id: int,
    payload: BatchReviewRequest | None,
    mode: ReviewMode,
) -> BatchReviewResponse:
    options = (payload or BatchReviewRequest()).to_options(mode)
    result = await engine.batch.review_storyboard(storyboard_id, options)
    return BatchReviewResponse(
        storyboard_id=storyboard_id,
        mode=mode,
        summary=BatchResultSummary(
            total=result.total,
            attempted=result.attempted,
            approved=result.approved,
            needs_work=result.needs_work,
            rejected=result.rejected,
            pending_human=result.pending_human,
        ),
        results=[
            BatchResultItem(
                panel_id=panel_id,
                score=item.score,
                status=item.status,
                recommendation=item.recommendation,
                issue_count=len(item.issues),
            )
            for panel_id, item in result.results.items()
        ],
        errors=result.errors,
    )


@router.post("/storyboards/{storyboard_id}", response_model=BatchReviewResponse)
async def review_storyboard(
    storyboard_id: int,
    payload: BatchReviewRequest | None = None,
    engine: ReviewEngine = ReviewEngineDep,
):
    """单次评审每个分镜，低分结果交给人工处理"""
    return await _run_batch(engine, storyboard_id, payload, "hitl")


@router.post("/storyboards/{storyboard_id}/auto", response_model=BatchReviewResponse)
async def auto_review_storyboard(
    storyboard_id: int,
    payload: BatchReviewRequest | None = None,
    engine: ReviewEngine = ReviewEngineDep,
):
    """对每个分镜运行完整的评审-重新生成循环"""
    return await _run_batch(engine, storyboard_id, payload, "unattended")


# ============================================
# 人工审核队列
# ============================================


@router.get("/queue", response_model=ReviewQueueResponse)
async def get_queue(
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    engine: ReviewEngine = ReviewEngineDep,
):
    items = await engine.human_queue.get_queue(limit=limit, offset=offset)
    return ReviewQueueResponse(items=items, limit=limit, offset=offset)


async def _decide(
    engine: ReviewEngine,
    image_id: int,
    action: str,
    payload: HumanFeedbackRequest | None,
) -> HumanDecisionResponse:
    payload = payload or HumanFeedbackRequest()
    result = await engine.human_queue.record_human_decision(
        image_id,
        HumanDecision(action=action, feedback=payload.feedback, regeneration_hints=payload.hints),
    )
    return HumanDecisionResponse(**result.model_dump(), message=DECISION_MESSAGES[action])


@router.post("/queue/{image_id}/approve", response_model=HumanDecisionResponse)
async def approve_image(
    image_id: int,
    payload: HumanFeedbackRequest | None = None,
    engine: ReviewEngine = ReviewEngineDep,
):
    return await _decide(engine, image_id, "approve", payload)


@router.post("/queue/{image_id}/reject", response_model=HumanDecisionResponse)
async def reject_image(
    image_id: int,
    payload: HumanFeedbackRequest | None = None,
    engine: ReviewEngine = ReviewEngineDep,
):
    if payload is None or not (payload.feedback or "").strip():
        raise AppException(
            "Feedback is required when rejecting an image",
            code="MISSING_FEEDBACK",
            status_code=status.HTTP_400_BAD_REQUEST,
        )
    return await _decide(engine, image_id, "reject", payload)


@router.post("/queue/{image_id}/regenerate", response_model=HumanDecisionResponse)
async def request_regeneration(
    image_id: int,
    payload: HumanFeedbackRequest | None = None,
    engine: ReviewEngine = ReviewEngineDep,
):
    return await _decide(engine, image_id, "regenerate", payload)


# ============================================
# 配置
# ============================================


@router.get("/config", response_model=ReviewConfig)
async def get_review_config(engine: ReviewEngine = ReviewEngineDep):
    return engine.default_config
