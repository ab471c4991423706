"""External identity verification pipeline."""

from .dispatcher import VerificationDispatcher
from .extraction import ExtractionPipeline
from .verifier import ProfileVerifier
from .vision import VisionClient

__all__ = ["ExtractionPipeline", "ProfileVerifier", "VerificationDispatcher", "VisionClient"]
