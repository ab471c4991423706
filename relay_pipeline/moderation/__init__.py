"""Content moderation pipeline."""

from .classifier import ClassifierClient
from .dispatcher import ModerationDispatcher
from .media import extract_media_urls, is_video_url

__all__ = ["ClassifierClient", "ModerationDispatcher", "extract_media_urls", "is_video_url"]
