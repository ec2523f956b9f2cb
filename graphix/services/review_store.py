from __future__ import annotations

from typing import Iterable, Protocol

from sqlalchemy import case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import aliased

from graphix.models.project import Character, GeneratedImage, Panel, Storyboard
from graphix.models.review import ImageReview
from graphix.utils import utcnow


class ReviewStore(Protocol):
    """评审流程所需的存储接口"""

    async def get_panel(self, panel_id: int) -> Panel | None: ...

    async def get_storyboard(self, storyboard_id: int) -> Storyboard | None: ...

    async def get_image(self, image_id: int) -> GeneratedImage | None: ...

    async def list_panel_images(self, panel_id: int) -> list[GeneratedImage]: ...

    async def list_panels(self, storyboard_id: int) -> list[Panel]: ...

    async def get_panel_ids_with_images(self, storyboard_id: int) -> set[int]: ...

    async def get_approved_panel_ids(self, storyboard_id: int) -> set[int]: ...

    async def get_characters(self, character_ids: Iterable[int]) -> list[Character]: ...

    async def set_image_selected(self, image_id: int) -> None: ...

    async def update_image_status(self, image_id: int, status: str) -> None: ...

    async def save_review(self, review: ImageReview) -> ImageReview: ...

    async def update_review_status(self, review_id: int, status: str) -> None: ...

    async def get_latest_review(self, image_id: int) -> ImageReview | None: ...

    async def get_max_iteration(self, panel_id: int) -> int: ...

    async def list_image_reviews(self, image_id: int) -> list[ImageReview]: ...

    async def list_panel_reviews(self, panel_id: int) -> list[ImageReview]: ...

    async def list_human_review_queue(
        self, limit: int, offset: int
    ) -> list[tuple[GeneratedImage, ImageReview, int | None]]: ...

    async def create_image(self, image: GeneratedImage) -> GeneratedImage: ...


class SqlReviewStore:
    """基于 SQLModel 的存储实现。

    每个操作使用独立的 AsyncSession，并发评审不同分镜时互不共享会话。
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self.session_maker = session_maker

    async def get_panel(self, panel_id: int) -> Panel | None:
        async with self.session_maker() as session:
            return await session.get(Panel, panel_id)

    async def get_storyboard(self, storyboard_id: int) -> Storyboard | None:
        async with self.session_maker() as session:
            return await session.get(Storyboard, storyboard_id)

    async def get_image(self, image_id: int) -> GeneratedImage | None:
        async with self.session_maker() as session:
            return await session.get(GeneratedImage, image_id)

    async def list_panel_images(self, panel_id: int) -> list[GeneratedImage]:
        """分镜的候选图片，最新的在前"""
        async with self.session_maker() as session:
            res = await session.execute(
                select(GeneratedImage)
                .where(GeneratedImage.panel_id == panel_id)
                .order_by(GeneratedImage.id.desc())
            )
            return list(res.scalars().all())

    async def list_panels(self, storyboard_id: int) -> list[Panel]:
        async with self.session_maker() as session:
            res = await session.execute(
                select(Panel)
                .where(Panel.storyboard_id == storyboard_id)
                .order_by(Panel.position.asc(), Panel.id.asc())
            )
            return list(res.scalars().all())

    async def get_panel_ids_with_images(self, storyboard_id: int) -> set[int]:
        async with self.session_maker() as session:
            res = await session.execute(
                select(GeneratedImage.panel_id)
                .join(Panel, Panel.id == GeneratedImage.panel_id)
                .where(Panel.storyboard_id == storyboard_id)
                .distinct()
            )
            return set(res.scalars().all())

    async def get_approved_panel_ids(self, storyboard_id: int) -> set[int]:
        async with self.session_maker() as session:
            res = await session.execute(
                select(GeneratedImage.panel_id)
                .join(Panel, Panel.id == GeneratedImage.panel_id)
                .where(
                    Panel.storyboard_id == storyboard_id,
                    GeneratedImage.review_status == "approved",
                )
                .distinct()
            )
            return set(res.scalars().all())

    async def get_characters(self, character_ids: Iterable[int]) -> list[Character]:
        ids = list(character_ids)
        if not ids:
            return []
        async with self.session_maker() as session:
            res = await session.execute(select(Character).where(Character.id.in_(ids)))
            by_id = {character.id: character for character in res.scalars().all()}
        # 保持调用方给出的顺序
        return [by_id[i] for i in ids if i in by_id]

    async def set_image_selected(self, image_id: int) -> None:
        """选中一张图片，同一分镜的其他图片取消选中"""
        target = aliased(GeneratedImage)
        panel_id = select(target.panel_id).where(target.id == image_id).scalar_subquery()
        async with self.session_maker() as session:
            await session.execute(
                update(GeneratedImage)
                .where(GeneratedImage.panel_id == panel_id)
                .values(
                    is_selected=case((GeneratedImage.id == image_id, True), else_=False),
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()

    async def update_image_status(self, image_id: int, status: str) -> None:
        async with self.session_maker() as session:
            await session.execute(
                update(GeneratedImage)
                .where(GeneratedImage.id == image_id)
                .values(review_status=status, updated_at=utcnow())
            )
            await session.commit()

    async def save_review(self, review: ImageReview) -> ImageReview:
        """写入评审记录并同步图片的评审状态（同一事务）"""
        async with self.session_maker() as session:
            review.created_at = utcnow()
            review.updated_at = review.created_at
            session.add(review)
            await session.execute(
                update(GeneratedImage)
                .where(GeneratedImage.id == review.generated_image_id)
                .values(review_status=review.status, updated_at=review.created_at)
            )
            await session.commit()
            await session.refresh(review)
            return review

    async def update_review_status(self, review_id: int, status: str) -> None:
        async with self.session_maker() as session:
            await session.execute(
                update(ImageReview)
                .where(ImageReview.id == review_id)
                .values(status=status, updated_at=utcnow())
            )
            await session.commit()

    async def get_latest_review(self, image_id: int) -> ImageReview | None:
        async with self.session_maker() as session:
            res = await session.execute(
                select(ImageReview)
                .where(ImageReview.generated_image_id == image_id)
                .order_by(ImageReview.id.desc())
                .limit(1)
            )
            return res.scalars().first()

    async def get_max_iteration(self, panel_id: int) -> int:
        async with self.session_maker() as session:
            res = await session.execute(
                select(func.max(ImageReview.iteration)).where(ImageReview.panel_id == panel_id)
            )
            return res.scalar() or 0

    async def list_image_reviews(self, image_id: int) -> list[ImageReview]:
        async with self.session_maker() as session:
            res = await session.execute(
                select(ImageReview)
                .where(ImageReview.generated_image_id == image_id)
                .order_by(ImageReview.id.desc())
            )
            return list(res.scalars().all())

    async def list_panel_reviews(self, panel_id: int) -> list[ImageReview]:
        async with self.session_maker() as session:
            res = await session.execute(
                select(ImageReview)
                .where(ImageReview.panel_id == panel_id)
                .order_by(ImageReview.id.desc())
            )
            return list(res.scalars().all())

    async def list_human_review_queue(
        self, limit: int, offset: int
    ) -> list[tuple[GeneratedImage, ImageReview, int | None]]:
        """待人工审核的图片，连同其最新评审记录与所属故事板，按评审时间倒序"""
        latest = (
            select(
                ImageReview.generated_image_id.label("image_id"),
                func.max(ImageReview.id).label("review_id"),
            )
            .group_by(ImageReview.generated_image_id)
            .subquery()
        )
        stmt = (
            select(GeneratedImage, ImageReview, Panel.storyboard_id)
            .join(latest, latest.c.image_id == GeneratedImage.id)
            .join(ImageReview, ImageReview.id == latest.c.review_id)
            .join(Panel, Panel.id == GeneratedImage.panel_id)
            .where(GeneratedImage.review_status == "human_review")
            .order_by(ImageReview.created_at.desc(), ImageReview.id.desc())
            .limit(limit)
            .offset(offset)
        )
        async with self.session_maker() as session:
            res = await session.execute(stmt)
            return [(image, review, storyboard_id) for image, review, storyboard_id in res.all()]

    async def create_image(self, image: GeneratedImage) -> GeneratedImage:
        async with self.session_maker() as session:
            image.created_at = utcnow()
            image.updated_at = image.created_at
            session.add(image)
            await session.commit()
            await session.refresh(image)
            return image
