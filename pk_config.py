"""PatchKit configuration.

Settings come from, in increasing priority:
  1. PatchConfig defaults
  2. a YAML mapping (explicit path, or ./patchkit.yaml when present)
  3. PATCHKIT_<FIELD> environment variables, e.g.
       PATCHKIT_SUSPICIOUS_MIN_RATIO=0.25
       PATCHKIT_LOG_LEVEL=DEBUG
"""

from __future__ import annotations

import dataclasses
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "patchkit.yaml"
ENV_PREFIX = "PATCHKIT_"


@dataclass
class PatchConfig:
    # A replacement that empties more than this many non-blank SEARCH lines is dropped.
    suspicious_max_deleted_lines: int = 3
    # A SEARCH longer than this whose replacement shrinks below the ratio is dropped.
    suspicious_min_search_chars: int = 100
    suspicious_min_ratio: float = 0.3
    reject_noop: bool = True
    log_level: str = "WARNING"


def _coerce(name: str, raw: Any, default: Any) -> Any:
    if isinstance(default, bool):
        if isinstance(raw, bool):
            return raw
        text = str(raw).strip().lower()
        if text in ("1", "true", "yes", "on"):
            return True
        if text in ("0", "false", "no", "off"):
            return False
        raise ValueError(f"Invalid boolean for {name}: {raw!r}")
    try:
        return type(default)(raw)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid value for {name}: {raw!r} ({e})") from e


def config_from_dict(data: Dict[str, Any], base: Optional[PatchConfig] = None) -> PatchConfig:
    """Overlay a mapping of settings on top of ``base`` (or the defaults)."""
    config = base or PatchConfig()
    known = {f.name for f in dataclasses.fields(PatchConfig)}
    unknown = set(data) - known
    if unknown:
        raise ValueError(f"Unknown config keys: {', '.join(sorted(unknown))}")
    updates = {
        name: _coerce(name, value, getattr(config, name))
        for name, value in data.items()
    }
    return dataclasses.replace(config, **updates)


def load_config(path: Optional[str] = None, environ: Optional[Dict[str, str]] = None) -> PatchConfig:
    """Build a PatchConfig from a YAML file and PATCHKIT_* variables."""
    environ = os.environ if environ is None else environ
    config = PatchConfig()

    if path is None and os.path.exists(DEFAULT_CONFIG_FILE):
        path = DEFAULT_CONFIG_FILE
    if path is not None:
        with open(path, 'r') as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Config file {path} must contain a mapping")
        config = config_from_dict(data, config)
        logger.debug("Loaded config from %s", path)

    overrides = {}
    for field in dataclasses.fields(PatchConfig):
        key = ENV_PREFIX + field.name.upper()
        if key in environ:
            overrides[field.name] = environ[key]
    if overrides:
        config = config_from_dict(overrides, config)
    return config
