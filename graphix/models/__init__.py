from .project import Character, GeneratedImage, Panel, Project, Storyboard
from .review import ImageReview

__all__ = ["Character", "GeneratedImage", "ImageReview", "Panel", "Project", "Storyboard"]
