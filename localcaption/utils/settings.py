from __future__ import annotations

import os
from copy import deepcopy
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from localcaption.utils.logger import logger

_SETTINGS_DIR = Path.home() / ".localcaption"
_SETTINGS_FILE = _SETTINGS_DIR / "settings.yaml"

_ENV_OVERRIDES: Dict[str, str] = {
    "LOCALCAPTION_MODELS_DIR": "models_dir",
    "LOCALCAPTION_GPU_LAYERS": "gpu_layers",
    "LOCALCAPTION_CONTEXT_SIZE": "context_size",
}


def default_models_dir() -> Path:
    return _SETTINGS_DIR / "models"


@dataclass
class CaptioningSettings:
    """Resolved runtime configuration for model storage and inference."""

    models_dir: str = ""
    context_size: int = 4096
    # -1 offloads every layer when the accelerator is available.
    gpu_layers: int = -1
    max_tokens: int = 512
    max_image_dimension: int = 2048
    progress_interval_s: float = 0.25
    download_chunk_size: int = 1024 * 1024
    http_timeout_s: float = 7200.0
    default_system_prompt: str = "Describe the image using 100 English words"
    default_temperature: float = 0.7

    def __post_init__(self) -> None:
        if not self.models_dir:
            self.models_dir = str(default_models_dir())
        self.models_dir = str(Path(self.models_dir).expanduser())
        self.context_size = max(512, int(self.context_size))
        self.gpu_layers = int(self.gpu_layers)
        self.max_tokens = max(1, int(self.max_tokens))
        self.max_image_dimension = max(16, int(self.max_image_dimension))
        self.progress_interval_s = max(0.0, float(self.progress_interval_s))
        self.download_chunk_size = max(1024, int(self.download_chunk_size))
        self.http_timeout_s = max(1.0, float(self.http_timeout_s))
        self.default_temperature = float(self.default_temperature)

    @property
    def models_path(self) -> Path:
        return Path(self.models_dir)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CaptioningSettings":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in (data or {}).items() if k in known})

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _read_settings_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
    except (OSError, yaml.YAMLError) as exc:
        logger.warning("Ignoring unreadable settings file %s: %s", path, exc)
        return {}
    if not isinstance(data, dict):
        logger.warning("Ignoring settings file %s: expected a mapping", path)
        return {}
    return data


def _inject_env_overrides(data: Dict[str, Any]) -> Dict[str, Any]:
    merged = deepcopy(data)
    for env_key, field_name in _ENV_OVERRIDES.items():
        value = os.getenv(env_key)
        if value not in (None, ""):
            merged[field_name] = value
    return merged


def load_settings(path: Optional[Path | str] = None) -> CaptioningSettings:
    """Load settings from YAML, then apply ``LOCALCAPTION_*`` environment overrides."""
    settings_path = Path(path).expanduser() if path else _SETTINGS_FILE
    data = _inject_env_overrides(_read_settings_file(settings_path))
    try:
        return CaptioningSettings.from_dict(data)
    except (TypeError, ValueError) as exc:
        logger.warning("Invalid settings in %s (%s); using defaults", settings_path, exc)
        return CaptioningSettings()


def save_settings(
    settings: CaptioningSettings, path: Optional[Path | str] = None
) -> Path:
    settings_path = Path(path).expanduser() if path else _SETTINGS_FILE
    settings_path.parent.mkdir(parents=True, exist_ok=True)
    with settings_path.open("w", encoding="utf-8") as fh:
        yaml.safe_dump(settings.to_dict(), fh, sort_keys=True)
    return settings_path
