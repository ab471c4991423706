"""Post-ingestion moderation and identity verification pipelines for a relay."""

__version__ = "0.1.0"
