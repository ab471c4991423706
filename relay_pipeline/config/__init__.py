"""Configuration package exports."""

from .loader import ConfigLocator, ConfigRepository
from .models import MirrorEndpoint, ModerationConfig, PipelineConfig, VerificationConfig

__all__ = [
    "ConfigLocator",
    "ConfigRepository",
    "MirrorEndpoint",
    "ModerationConfig",
    "PipelineConfig",
    "VerificationConfig",
]
