"""Client for an Ollama-style visual model reading profile screenshots."""

from __future__ import annotations

import base64
import json
from pathlib import Path

import httpx
from pydantic import ValidationError

from ..errors import VisionError
from ..logging_conf import configure_logging
from ..models import ProfileData
from .keys import scan_npub

PROFILE_PROMPT = (
    "Analyze this social profile screenshot and extract ONLY two pieces of information:\n\n"
    "1. The npub (Nostr public key) if present. It looks like 'npub1' followed by "
    "lowercase letters and digits and usually sits in the bio text, possibly on its own line.\n"
    "2. The EXACT follower count as displayed. The stats row usually shows Tweets, "
    "Following, Followers and Likes; report the number next to 'Followers', keeping "
    "abbreviations such as K or M.\n\n"
    "Return ONLY a JSON object with keys 'npub' and 'follower_count'. "
    "If either is not found, set the value to null."
)


def parse_model_json(reply: str) -> ProfileData:
    """Pull the JSON object out of a model reply, fenced or bare."""

    payload = reply
    if "```" in reply:
        start = reply.index("```") + 3
        if reply[start : start + 4] == "json":
            start += 4
        end = reply.find("```", start)
        if end >= 0:
            payload = reply[start:end]
    else:
        start, end = reply.find("{"), reply.rfind("}")
        if start >= 0 and end > start:
            payload = reply[start : end + 1]
    try:
        data = json.loads(payload)
    except ValueError as exc:
        raise VisionError(f"model reply is not JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise VisionError("model reply is not a JSON object")
    try:
        profile = ProfileData.model_validate(data)
    except ValidationError as exc:
        raise VisionError(f"model reply has unexpected shape: {exc}") from exc
    if not profile.npub and profile.bio:
        profile.npub = scan_npub(profile.bio)
    return profile


class VisionClient:
    def __init__(
        self,
        endpoint: str,
        model: str,
        timeout: float = 120.0,
        client: httpx.Client | None = None,
    ) -> None:
        self.endpoint = endpoint.rstrip("/")
        self.model = model
        self.timeout = timeout
        self._client = client or httpx.Client(timeout=timeout)
        self.logger = configure_logging().bind(component="vision")

    def analyze(self, image_path: Path, prompt: str = PROFILE_PROMPT) -> ProfileData:
        image = base64.b64encode(image_path.read_bytes()).decode("ascii")
        try:
            response = self._client.post(
                f"{self.endpoint}/api/generate",
                json={"model": self.model, "prompt": prompt, "stream": False, "images": [image]},
                timeout=self.timeout,
            )
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise VisionError(f"vision request failed: {exc}") from exc
        reply = body.get("response") if isinstance(body, dict) else None
        if not isinstance(reply, str):
            raise VisionError("vision response has no 'response' text")
        data = parse_model_json(reply)
        self.logger.debug("vision_reply_parsed", npub=data.npub, follower_count=data.follower_count)
        return data

    def close(self) -> None:
        self._client.close()


__all__ = ["PROFILE_PROMPT", "VisionClient", "parse_model_json"]
