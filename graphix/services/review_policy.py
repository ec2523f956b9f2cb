"""评审决策规则：分数分级、下一步动作、重新生成提示。

纯函数，不访问存储，也不会抛出异常。
"""
from __future__ import annotations

from graphix.schemas.review import ReviewAction, ReviewConfig, ReviewIssue, ReviewStatus

# 固定的拒绝阈值，不随配置变化
REJECT_BELOW = 0.3


def classify_score(score: float, config: ReviewConfig) -> ReviewStatus:
    """按顺序匹配，第一条命中的规则生效（阈值之间不要求有序）。"""
    if score >= config.auto_approve_above:
        return "approved"
    if score >= config.min_acceptance_score:
        return "approved"
    if score < config.pause_for_human_below and config.mode == "hitl":
        return "human_review"
    if score < REJECT_BELOW:
        return "rejected"
    return "needs_work"


def plan_action(
    issues: list[ReviewIssue],
    status: ReviewStatus,
    iteration: int,
    config: ReviewConfig,
) -> ReviewAction:
    """根据状态和问题列表决定下一步动作。

    `iteration` 为该分镜此前的最大迭代号（没有记录时为 0）。
    """
    if status == "approved":
        return "approve"
    if status in ("human_review", "rejected"):
        return "human_review"
    if status != "needs_work":
        return "regenerate"

    if iteration >= config.max_iterations:
        return "human_review"

    has_quality = any(issue.type == "quality" for issue in issues)
    has_missing = any(issue.type == "missing_element" for issue in issues)
    has_critical = any(issue.severity == "critical" for issue in issues)

    if has_quality and not has_missing and not has_critical:
        return "inpaint"
    return "regenerate"


def build_regeneration_hints(issues: list[ReviewIssue]) -> list[str]:
    """先按顺序收集 suggested_fix，再为缺失元素追加 "Add: ..." 提示。"""
    hints = [issue.suggested_fix for issue in issues if issue.suggested_fix]
    hints.extend(f"Add: {issue.description}" for issue in issues if issue.type == "missing_element")
    return hints
