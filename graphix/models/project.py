from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Column
from sqlmodel import Field, Relationship, SQLModel

from graphix.utils import utcnow


class Project(SQLModel, table=True):
    """项目"""

    id: Optional[int] = Field(default=None, primary_key=True)
    title: str
    style: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    characters: List["Character"] = Relationship(
        back_populates="project",
        sa_relationship_kwargs={"cascade": "all, delete-orphan"},
    )
    storyboards: List["Storyboard"] = Relationship(
        back_populates="project",
        sa_relationship_kwargs={"cascade": "all, delete-orphan"},
    )


class Character(SQLModel, table=True):
    """角色"""

    id: Optional[int] = Field(default=None, primary_key=True)
    project_id: int = Field(foreign_key="project.id", index=True)
    name: str
    description: Optional[str] = None
    image_url: Optional[str] = None

    project: Optional[Project] = Relationship(back_populates="characters")


class Storyboard(SQLModel, table=True):
    """故事板（一组按顺序排列的分镜）"""

    id: Optional[int] = Field(default=None, primary_key=True)
    project_id: int = Field(foreign_key="project.id", index=True)
    name: str
    description: Optional[str] = ""
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    project: Optional[Project] = Relationship(back_populates="storyboards")
    panels: List["Panel"] = Relationship(
        back_populates="storyboard",
        sa_relationship_kwargs={"cascade": "all, delete-orphan"},
    )


class Panel(SQLModel, table=True):
    """分镜"""

    id: Optional[int] = Field(default=None, primary_key=True)
    storyboard_id: int = Field(foreign_key="storyboard.id", index=True)
    position: int = Field(index=True)
    description: Optional[str] = ""
    # {camera_angle, mood, lighting}
    direction: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    character_ids: List[int] = Field(default_factory=list, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    storyboard: Optional[Storyboard] = Relationship(back_populates="panels")
    images: List["GeneratedImage"] = Relationship(
        back_populates="panel",
        sa_relationship_kwargs={"cascade": "all, delete-orphan"},
    )


class GeneratedImage(SQLModel, table=True):
    """分镜的候选图片"""

    id: Optional[int] = Field(default=None, primary_key=True)
    panel_id: int = Field(foreign_key="panel.id", index=True)
    local_path: str
    cloud_url: Optional[str] = None
    thumbnail_path: Optional[str] = None
    seed: int
    prompt: str
    negative_prompt: Optional[str] = ""
    model: str
    width: int = 1024
    height: int = 1024
    is_selected: bool = Field(default=False, index=True)
    # pending|approved|needs_work|rejected|human_review，仅由评审流程写入
    review_status: str = Field(default="pending", index=True)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    panel: Optional[Panel] = Relationship(back_populates="images")
