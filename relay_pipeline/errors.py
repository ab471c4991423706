"""Exception hierarchy shared by the moderation and verification pipelines."""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for every error raised inside the pipeline."""


class ClassifierError(PipelineError):
    """The external classifier could not produce a verdict (network, 5xx, bad JSON)."""


class MediaDownloadError(PipelineError):
    """Media referenced by an event could not be downloaded."""


class MediaValidationError(PipelineError):
    """Downloaded or local media is empty or not a recognised media type."""


class SessionUnavailableError(PipelineError):
    """No healthy automation session could be produced."""


class MirrorsUnavailableError(PipelineError):
    """None of the configured mirror endpoints returned a usable profile page."""


class MalformedInputError(PipelineError):
    """Queue entry or profile content that can never be processed successfully."""


class KeyDecodeError(PipelineError):
    """A claimed identity key is not a valid bech32 public key."""


class VisionError(PipelineError):
    """The visual model call failed or its reply held no parseable JSON."""


__all__ = [
    "ClassifierError",
    "KeyDecodeError",
    "MalformedInputError",
    "MediaDownloadError",
    "MediaValidationError",
    "MirrorsUnavailableError",
    "PipelineError",
    "SessionUnavailableError",
    "VisionError",
]
