"""
CardRescue configuration.

All settings the recovery tools need travel in a single RescueConfig that is
handed to each component. Values come from built-in defaults, optionally
overridden by a JSON file and then by command-line options.
"""

import json
import logging
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import ConfigurationError

DEFAULT_ENGINES = ["exif_thumbs", "photorec", "recoverjpeg", "foremost", "pycarve"]
IMAGER_CHOICES = ("auto", "ddrescue", "builtin")


@dataclass(frozen=True)
class RescueConfig:
    """Immutable settings for one CardRescue run."""

    device: Optional[str] = None
    mountpoint: Optional[str] = None
    output_dir: Optional[Path] = None
    image_name: str = "sdcard"
    retry_passes: int = 3
    imager: str = "auto"
    cluster_size: int = 64 * 1024
    sector_size: int = 512
    direct_io: bool = True
    map_save_interval: float = 30.0
    engines: List[str] = field(default_factory=lambda: list(DEFAULT_ENGINES))
    carve_types: List[str] = field(default_factory=lambda: ["jpg"])
    thumbnail_source: Optional[Path] = None
    parallel_engines: bool = False
    top_n: int = 20
    log_level: str = "INFO"
    kill_timeout: float = 3.0
    owner_uid: Optional[int] = None
    owner_gid: Optional[int] = None
    umask: str = "0022"
    reports_dir: Optional[Path] = None

    def __post_init__(self):
        if self.retry_passes < -1:
            raise ConfigurationError(
                f"retry_passes must be -1 (infinite) or >= 0, got {self.retry_passes}")
        if self.imager not in IMAGER_CHOICES:
            raise ConfigurationError(
                f"imager must be one of {', '.join(IMAGER_CHOICES)}, got {self.imager!r}")
        if self.sector_size <= 0 or self.cluster_size < self.sector_size:
            raise ConfigurationError("cluster_size must be at least sector_size")
        if self.cluster_size % self.sector_size:
            raise ConfigurationError("cluster_size must be a multiple of sector_size")
        if not isinstance(logging.getLevelName(self.log_level.upper()), int):
            raise ConfigurationError(f"Unknown log level: {self.log_level}")

    # Paths derived from the output directory

    def require_output_dir(self) -> Path:
        if self.output_dir is None:
            raise ConfigurationError("No output directory configured",
                                     "Set output_dir in the config file or pass --output-dir.")
        return Path(self.output_dir)

    @property
    def image_path(self) -> Path:
        return self.require_output_dir() / f"{self.image_name}.img"

    @property
    def map_path(self) -> Path:
        return self.require_output_dir() / f"{self.image_name}.map"

    def log_path(self, run_type: str) -> Path:
        return self.require_output_dir() / f"{run_type}_run.log"

    def with_overrides(self, **overrides: Any) -> "RescueConfig":
        """Return a copy with every non-None override applied."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **_coerce(changes)) if changes else self


_PATH_FIELDS = {"output_dir", "thumbnail_source", "reports_dir"}


def _coerce(values: Dict[str, Any]) -> Dict[str, Any]:
    coerced = dict(values)
    for key in _PATH_FIELDS & coerced.keys():
        if coerced[key] is not None:
            coerced[key] = Path(coerced[key]).expanduser()
    return coerced


def load_config(config_path: Optional[Path] = None, **overrides: Any) -> RescueConfig:
    """
    Load configuration.

    Args:
        config_path: Optional path to a JSON configuration file
        **overrides: Values taking precedence over the file (None is ignored)

    Returns:
        RescueConfig with defaults filled in

    Raises:
        ConfigurationError: If the file is unreadable or has unknown keys
    """
    values: Dict[str, Any] = {}

    if config_path is not None:
        config_path = Path(config_path)
        try:
            with open(config_path, 'r') as f:
                values = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Failed to load config from {config_path}: {e}")
        if not isinstance(values, dict):
            raise ConfigurationError(f"Config file {config_path} must contain a JSON object")

    known = {f.name for f in fields(RescueConfig)}
    unknown = sorted(set(values) - known)
    if unknown:
        raise ConfigurationError(f"Unknown configuration keys: {', '.join(unknown)}")

    values.update({k: v for k, v in overrides.items() if v is not None})
    return RescueConfig(**_coerce(values))
