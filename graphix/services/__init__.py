from .image import ImageService
from .panel_generator import PanelRegenerator
from .review_engine import ReviewEngine, create_review_engine

__all__ = ["ImageService", "PanelRegenerator", "ReviewEngine", "create_review_engine"]
