from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, get_args

from pydantic import BaseModel, ConfigDict, Field

ReviewMode = Literal["unattended", "hitl"]
ReviewStatus = Literal["pending", "approved", "needs_work", "rejected", "human_review"]
ReviewAction = Literal[
    "approve",
    "regenerate",
    "inpaint",
    "adjust_prompt",
    "human_review",
    "human_rejected",  # 人工审核后拒绝
]
IssueType = Literal[
    "missing_element",
    "wrong_composition",
    "wrong_character",
    "wrong_action",
    "quality",
    "other",
]
IssueSeverity = Literal["critical", "major", "minor"]
LoopOutcome = Literal["accepted", "escalated", "rejected", "exhausted", "regeneration_failed"]

ISSUE_TYPES: tuple[str, ...] = get_args(IssueType)
ISSUE_SEVERITIES: tuple[str, ...] = get_args(IssueSeverity)


class ReviewConfig(BaseModel):
    """评审配置。不强制阈值之间的大小顺序。"""

    model_config = ConfigDict(frozen=True)

    mode: ReviewMode = "unattended"
    max_iterations: int = Field(default=3, ge=1)
    min_acceptance_score: float = Field(default=0.7, ge=0.0, le=1.0)
    auto_approve_above: float = Field(default=0.9, ge=0.0, le=1.0)
    pause_for_human_below: float = Field(default=0.5, ge=0.0, le=1.0)

    def merged(self, overrides: "ReviewConfigOverride | None") -> "ReviewConfig":
        if overrides is None:
            return self
        data = self.model_dump()
        data.update(overrides.model_dump(exclude_none=True))
        return ReviewConfig.model_validate(data)


class ReviewConfigOverride(BaseModel):
    """部分配置覆盖（未设置的字段沿用默认配置）"""

    mode: ReviewMode | None = None
    max_iterations: int | None = Field(default=None, ge=1)
    min_acceptance_score: float | None = Field(default=None, ge=0.0, le=1.0)
    auto_approve_above: float | None = Field(default=None, ge=0.0, le=1.0)
    pause_for_human_below: float | None = Field(default=None, ge=0.0, le=1.0)


class ReviewIssue(BaseModel):
    type: IssueType
    description: str
    severity: IssueSeverity
    suggested_fix: str | None = None


class ImageAnalysis(BaseModel):
    """视觉模型的原始分析结果"""

    adherence_score: float
    issues: list[ReviewIssue] = Field(default_factory=list)
    found_elements: list[str] = Field(default_factory=list)
    missing_elements: list[str] = Field(default_factory=list)
    quality_notes: str | None = None
    raw_response: str | None = None


class PanelContext(BaseModel):
    description: str | None = None
    character_ids: list[int] | None = None
    character_names: list[str] | None = None
    mood: str | None = None
    camera_angle: str | None = None
    narrative_context: str | None = None


class ReviewResult(BaseModel):
    image_id: int
    panel_id: int
    score: float
    status: ReviewStatus
    issues: list[ReviewIssue] = Field(default_factory=list)
    recommendation: ReviewAction
    iteration: int
    review_id: int | None = None
    human_feedback: str | None = None


class HumanDecision(BaseModel):
    # action 在评审流程中校验，非法值抛出 InvalidDecisionError
    action: str
    feedback: str | None = None
    regeneration_hints: str | None = None


class FinalImage(BaseModel):
    id: int
    local_path: str
    cloud_url: str | None = None
    prompt: str
    seed: int


class AutoReviewResult(BaseModel):
    final_image: FinalImage
    iterations: list[ReviewResult]
    total_iterations: int
    accepted: bool
    outcome: LoopOutcome
    reason: str


class ReviewQueueItem(BaseModel):
    review_id: int
    image_id: int
    panel_id: int
    storyboard_id: int | None = None
    image_path: str
    thumbnail_path: str | None = None
    prompt: str
    ai_score: float
    ai_issues: list[ReviewIssue] = Field(default_factory=list)
    ai_recommendation: ReviewAction
    iteration: int
    created_at: datetime


class BatchReviewOptions(BaseModel):
    config: ReviewConfigOverride | None = None
    only_pending: bool = False
    limit: int | None = Field(default=None, ge=1)
    parallel: bool = False
    # 未指定时使用引擎的默认并发数
    concurrency: int | None = Field(default=None, ge=1)


class BatchError(BaseModel):
    panel_id: int
    error: str


class BatchReviewResult(BaseModel):
    # total 只统计产生了评审结果的分镜；attempted 包含失败的分镜
    total: int
    attempted: int
    approved: int
    needs_work: int
    rejected: int
    pending_human: int
    results: dict[int, ReviewResult] = Field(default_factory=dict)
    errors: list[BatchError] = Field(default_factory=list)


# ============================================
# API 请求/响应
# ============================================


class ConfigOverrideRequest(BaseModel):
    """接口层的配置覆盖，超出范围的值会被截断而不是报错"""

    mode: str | None = None
    max_iterations: float | None = None
    min_acceptance_score: float | None = None
    auto_approve_above: float | None = None
    pause_for_human_below: float | None = None

    def to_override(self) -> ReviewConfigOverride:
        override: dict[str, Any] = {}
        if self.mode in ("unattended", "hitl"):
            override["mode"] = self.mode
        if self.max_iterations is not None:
            override["max_iterations"] = int(max(1, min(10, self.max_iterations)))
        for name in ("min_acceptance_score", "auto_approve_above", "pause_for_human_below"):
            value = getattr(self, name)
            if value is not None:
                override[name] = max(0.0, min(1.0, value))
        return ReviewConfigOverride(**override)


class ReviewImageRequest(BaseModel):
    prompt: str | None = Field(default=None, max_length=20000)
    context: PanelContext | None = None


class BatchReviewRequest(ConfigOverrideRequest):
    only_pending: bool = False
    limit: int | None = None
    parallel: bool = False
    concurrency: int | None = None

    def to_options(self, mode: ReviewMode) -> BatchReviewOptions:
        override = self.to_override().model_copy(update={"mode": mode})
        return BatchReviewOptions(
            config=override,
            only_pending=self.only_pending,
            limit=max(1, min(1000, self.limit)) if self.limit else None,
            parallel=self.parallel,
            concurrency=max(1, min(10, self.concurrency)) if self.concurrency else None,
        )


class HumanFeedbackRequest(BaseModel):
    feedback: str | None = Field(default=None, max_length=10000)
    hints: str | None = Field(default=None, max_length=5000)


class ImageReviewRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    generated_image_id: int
    panel_id: int
    score: float
    status: str
    issues: list[dict[str, Any]]
    recommendation: str | None
    iteration: int
    previous_review_id: int | None
    reviewed_by: str
    human_feedback: str | None
    regeneration_hints: str | None
    created_at: datetime


class IterationSummary(BaseModel):
    iteration: int
    score: float
    status: ReviewStatus
    recommendation: ReviewAction


class AutoReviewResponse(AutoReviewResult):
    panel_id: int
    iteration_summary: list[IterationSummary]


class BatchResultSummary(BaseModel):
    total: int
    attempted: int
    approved: int
    needs_work: int
    rejected: int
    pending_human: int


class BatchResultItem(BaseModel):
    panel_id: int
    score: float
    status: ReviewStatus
    recommendation: ReviewAction
    issue_count: int


class BatchReviewResponse(BaseModel):
    storyboard_id: int
    mode: ReviewMode
    summary: BatchResultSummary
    results: list[BatchResultItem]
    errors: list[BatchError]


class HumanDecisionResponse(ReviewResult):
    message: str


class PanelHistoryResponse(BaseModel):
    panel_id: int
    latest_iteration: int
    reviews: list[ImageReviewRead]


class ReviewQueueResponse(BaseModel):
    items: list[ReviewQueueItem]
    limit: int
    offset: int
