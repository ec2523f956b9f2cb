from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Column, Text
from sqlmodel import Field, SQLModel

from graphix.utils import utcnow


class ImageReview(SQLModel, table=True):
    """图片评审记录（创建后不可修改，仅 status 可被标记为 human_review）"""

    id: Optional[int] = Field(default=None, primary_key=True)
    generated_image_id: int = Field(foreign_key="generatedimage.id", index=True)
    panel_id: int = Field(foreign_key="panel.id", index=True)

    score: float = Field(ge=0.0, le=1.0)
    status: str = Field(index=True)
    issues: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    recommendation: Optional[str] = None

    # 同一分镜下单调递增，跨候选图片不重置
    iteration: int = Field(default=1, index=True)
    previous_review_id: Optional[int] = None

    reviewed_by: str  # ai|human
    human_feedback: Optional[str] = Field(default=None, sa_column=Column(Text))
    regeneration_hints: Optional[str] = Field(default=None, sa_column=Column(Text))

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
