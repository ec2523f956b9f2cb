from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from graphix.config import Settings
from graphix.schemas.review import ReviewConfig
from graphix.services.batch_review import BatchReviewOrchestrator
from graphix.services.human_review import HumanReviewQueue
from graphix.services.image import ImageService
from graphix.services.panel_generator import PanelRegenerator, Regenerator
from graphix.services.review_loop import AutonomousReviewLoop
from graphix.services.review_recorder import ReviewRecorder
from graphix.services.review_store import ReviewStore, SqlReviewStore
from graphix.services.reviewer import ImageReviewer
from graphix.services.vision import VisionScorer, create_vision_scorer


@dataclass(slots=True)
class ReviewEngine:
    default_config: ReviewConfig
    store: ReviewStore
    recorder: ReviewRecorder
    reviewer: ImageReviewer
    human_queue: HumanReviewQueue
    loop: AutonomousReviewLoop
    batch: BatchReviewOrchestrator


def create_review_engine(
    settings: Settings,
    session_maker: async_sessionmaker[AsyncSession],
    *,
    scorer: VisionScorer | None = None,
    regenerator: Regenerator | None = None,
    store: ReviewStore | None = None,
) -> ReviewEngine:
    """组装评审引擎的各个组件（每个组件一个实例）"""
    default_config = settings.review_config()
    store = store or SqlReviewStore(session_maker)
    scorer = scorer or create_vision_scorer(settings)
    regenerator = regenerator or PanelRegenerator(settings, store, ImageService(settings))

    recorder = ReviewRecorder(store)
    reviewer = ImageReviewer(
        store,
        recorder,
        scorer,
        default_config=default_config,
        scoring_timeout_s=settings.review_scoring_timeout_s,
    )
    human_queue = HumanReviewQueue(store, recorder)
    loop = AutonomousReviewLoop(
        store,
        reviewer,
        human_queue,
        regenerator,
        default_config=default_config,
        regeneration_timeout_s=settings.review_regeneration_timeout_s,
    )
    batch = BatchReviewOrchestrator(
        store,
        reviewer,
        loop,
        default_config=default_config,
        default_concurrency=settings.review_batch_concurrency,
    )

    return ReviewEngine(
        default_config=default_config,
        store=store,
        recorder=recorder,
        reviewer=reviewer,
        human_queue=human_queue,
        loop=loop,
        batch=batch,
    )
