"""Configuration loading helpers for the relay pipeline."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path

import yaml

from .models import PipelineConfig

CONFIG_EXTENSIONS = (".yaml", ".yml", ".json")
PIPELINE_CONFIG_FILENAME = "pipeline_config.yaml"


def _read_file(path: Path) -> dict:
    text = path.read_text(encoding="utf-8")
    if path.suffix in (".yaml", ".yml"):
        data = yaml.safe_load(text) or {}
    else:
        data = json.loads(text)
    if not isinstance(data, dict):
        raise ValueError(f"Configuration file must contain a mapping: {path}")
    return data


def _write_file(path: Path, payload: dict) -> None:
    with path.open("w", encoding="utf-8") as stream:
        if path.suffix in (".yaml", ".yml"):
            yaml.safe_dump(payload, stream, allow_unicode=True, sort_keys=False)
        else:
            json.dump(payload, stream, indent=2, ensure_ascii=False)


@dataclass(slots=True)
class ConfigLocator:
    """Resolve important paths from project root."""

    project_root: Path | None = None
    data_dir: Path | None = None
    logs_dir: Path | None = None

    def __post_init__(self) -> None:
        env_root = os.environ.get("RELAY_PIPELINE_HOME")
        if env_root:
            root = Path(env_root).expanduser().resolve()
        else:
            root = (self.project_root or Path(__file__).resolve().parents[2]).resolve()
        self.project_root = root
        self.data_dir = (root / "data").resolve()
        self.logs_dir = (root / "logs").resolve()
        self.ensure_directories()

    def ensure_directories(self) -> None:
        for directory in (self.data_dir, self.logs_dir):
            directory.mkdir(parents=True, exist_ok=True)

    def config_path(self) -> Path:
        return self.data_dir / PIPELINE_CONFIG_FILENAME


class ConfigRepository:
    """Repository encapsulating config IO and schema validation."""

    def __init__(self, locator: ConfigLocator | None = None) -> None:
        self.locator = locator or ConfigLocator()
        self._cache: PipelineConfig | None = None

    def load(self, path: Path | None = None) -> PipelineConfig:
        """Load the pipeline config, writing defaults on first use.

        An explicit ``path`` (YAML or JSON) bypasses the cache and is never
        written back.
        """

        if path is not None:
            return PipelineConfig.model_validate(_read_file(path))
        if self._cache is not None:
            return self._cache
        default_path = self.locator.config_path()
        if default_path.exists():
            config = PipelineConfig.model_validate(_read_file(default_path))
        else:
            config = PipelineConfig()
            self.save(config)
        self._cache = config
        return config

    def save(self, config: PipelineConfig, path: Path | None = None) -> Path:
        target = path or self.locator.config_path()
        if target.suffix not in CONFIG_EXTENSIONS:
            raise ValueError(f"Unsupported configuration format: {target.suffix}")
        _write_file(target, config.model_dump(mode="json"))
        if path is None:
            self._cache = config
        return target

    def reload(self) -> PipelineConfig:
        self._cache = None
        return self.load()

    def resolve_path(self, path: Path) -> Path:
        """Resolve a configured path against the project root."""

        if not path.is_absolute():
            return (self.locator.project_root / path).resolve()
        return path


__all__ = ["ConfigLocator", "ConfigRepository", "CONFIG_EXTENSIONS"]
