"""HTTP client for the external media classifier."""

from __future__ import annotations

import tempfile
from pathlib import Path
from urllib.parse import urlsplit

import httpx
from pydantic import ValidationError

from ..config import ModerationConfig
from ..errors import ClassifierError, MediaDownloadError, MediaValidationError
from ..logging_conf import configure_logging
from ..models import Decision, ModerationVerdict
from .media import guess_suffix, is_video_url, sniff_media_type

DISABLED_EXPLANATION = "Moderation is disabled"
DOWNLOAD_FAILED_EXPLANATION = "Failed to download image for moderation"

_CONTENT_TYPES = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "bmp": "image/bmp",
    "webp": "image/webp",
    "svg": "image/svg+xml",
    "avif": "image/avif",
    "mp4": "video/mp4",
    "m4v": "video/mp4",
    "mov": "video/quicktime",
    "webm": "video/webm",
    "mkv": "video/x-matroska",
    "avi": "video/x-msvideo",
    "ogv": "video/ogg",
    "mpg": "video/mpeg",
    "mpeg": "video/mpeg",
}


def normalise_endpoint(endpoint: str) -> str:
    """Add a scheme and the default port when missing; drop trailing slashes."""

    endpoint = endpoint.strip().rstrip("/")
    if endpoint.endswith("/moderate"):
        endpoint = endpoint[: -len("/moderate")]
    if not endpoint.startswith(("http://", "https://")):
        endpoint = f"http://{endpoint}"
    parts = urlsplit(endpoint)
    if parts.port is None and parts.scheme == "http":
        endpoint = endpoint.replace(parts.netloc, f"{parts.netloc}:8000", 1)
    return endpoint


class ClassifierClient:
    """Download untrusted media and submit it to the classifier.

    ``moderate_url`` fails open: when the media cannot be downloaded the
    verdict is ALLOW with category ``error``. Classifier failures raise
    ``ClassifierError``.
    """

    def __init__(
        self,
        config: ModerationConfig,
        client: httpx.Client | None = None,
        download_dir: Path | None = None,
    ) -> None:
        self.config = config
        self.endpoint = normalise_endpoint(config.endpoint)
        self.download_dir = download_dir or config.temp_dir
        self.download_dir.mkdir(parents=True, exist_ok=True)
        self._client = client or httpx.Client(
            follow_redirects=True, timeout=config.timeout_seconds
        )
        self.logger = configure_logging().bind(component="classifier")

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    def close(self) -> None:
        self._client.close()

    # ------------------------------------------------------------------
    def moderate_url(self, url: str) -> ModerationVerdict:
        return self._moderate_remote(url, dispute_reason=None)

    def moderate_file(self, path: Path) -> ModerationVerdict:
        if not self.enabled:
            return self._disabled_verdict()
        return self._submit(path, "moderate", self.config.mode, self.config.threshold, None)

    def moderate_dispute_url(self, url: str, reason: str) -> ModerationVerdict:
        return self._moderate_remote(url, dispute_reason=reason)

    def moderate_dispute_file(self, path: Path, reason: str) -> ModerationVerdict:
        if not self.enabled:
            return self._disabled_verdict()
        return self._submit(
            path,
            "moderate_dispute",
            self.config.dispute_mode,
            self.config.dispute_threshold,
            reason,
        )

    # ------------------------------------------------------------------
    def _moderate_remote(self, url: str, dispute_reason: str | None) -> ModerationVerdict:
        if not self.enabled:
            return self._disabled_verdict()
        try:
            path = self._download(url)
        except MediaDownloadError as exc:
            self.logger.warning("media_download_failed", url=url, error=str(exc))
            return ModerationVerdict(
                decision=Decision.ALLOW,
                explanation=DOWNLOAD_FAILED_EXPLANATION,
                content_level=0,
                confidence=0.0,
                category="error",
                moderation_mode=self.config.mode,
                is_video=is_video_url(url),
            )
        try:
            if dispute_reason is None:
                return self.moderate_file(path)
            return self.moderate_dispute_file(path, dispute_reason)
        finally:
            path.unlink(missing_ok=True)

    def _download(self, url: str) -> Path:
        handle = tempfile.NamedTemporaryFile(
            dir=self.download_dir, prefix="media_", suffix=guess_suffix(url), delete=False
        )
        path = Path(handle.name)
        try:
            with handle, self._client.stream("GET", url) as response:
                if response.status_code != 200:
                    raise MediaDownloadError(f"download failed with status {response.status_code}")
                for chunk in response.iter_bytes():
                    handle.write(chunk)
        except httpx.HTTPError as exc:
            path.unlink(missing_ok=True)
            raise MediaDownloadError(f"failed to download {url}: {exc}") from exc
        except MediaDownloadError:
            path.unlink(missing_ok=True)
            raise
        self.logger.debug("media_downloaded", url=url, path=str(path), size=path.stat().st_size)
        return path

    def _submit(
        self,
        path: Path,
        route: str,
        mode: str,
        threshold: float,
        dispute_reason: str | None,
    ) -> ModerationVerdict:
        if not path.exists():
            raise MediaValidationError(f"media file not found: {path}")
        if path.stat().st_size == 0:
            raise MediaValidationError(f"media file is empty: {path}")
        media_type = sniff_media_type(path)
        if media_type is None:
            raise MediaValidationError(f"file does not appear to be valid media: {path}")

        filename = path.name if path.suffix else f"{path.name}.{media_type}"
        data = {"moderation_mode": mode, "threshold": f"{threshold:f}"}
        if dispute_reason is not None:
            data["dispute_reason"] = dispute_reason
        content_type = _CONTENT_TYPES.get(media_type, "application/octet-stream")
        try:
            with path.open("rb") as stream:
                response = self._client.post(
                    f"{self.endpoint}/{route}",
                    files={"file": (filename, stream, content_type)},
                    data=data,
                    headers={"Accept": "application/json"},
                    timeout=self.config.timeout_seconds,
                )
        except httpx.HTTPError as exc:
            raise ClassifierError(f"classifier request failed: {exc}") from exc
        if response.status_code // 100 != 2:
            raise ClassifierError(
                f"classifier returned status {response.status_code}: {response.text[:200]}"
            )
        try:
            verdict = ModerationVerdict.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise ClassifierError(f"invalid classifier response: {exc}") from exc
        self.logger.info(
            "media_classified",
            file=path.name,
            media_type=media_type,
            route=route,
            decision=verdict.decision.value,
            content_level=verdict.content_level,
            confidence=verdict.confidence,
        )
        return verdict

    def _disabled_verdict(self) -> ModerationVerdict:
        return ModerationVerdict(
            decision=Decision.ALLOW,
            explanation=DISABLED_EXPLANATION,
            content_level=0,
        )


__all__ = ["ClassifierClient", "DISABLED_EXPLANATION", "DOWNLOAD_FAILED_EXPLANATION", "normalise_endpoint"]
