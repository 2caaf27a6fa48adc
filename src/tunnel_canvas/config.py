"""Settings from the environment and the masters file."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Iterable, Optional

import yaml
from pydantic import ValidationError as PydanticValidationError

from .errors import ConfigurationError
from .models import MasterConfig

logger = logging.getLogger(__name__)


def _float_env(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Ignoring {name}={raw!r}: not a number")
        return default


# --- Constants ---
MASTERS_FILE = Path(os.environ.get("TUNNEL_CANVAS_MASTERS", Path.home() / ".tunnel-canvas" / "masters.yaml"))
LOG_LEVEL = os.environ.get("TUNNEL_CANVAS_LOG_LEVEL", "INFO").upper()

DEFAULT_PREFLIGHT_TIMEOUT = _float_env("TUNNEL_CANVAS_PREFLIGHT_TIMEOUT", 10.0)
DEFAULT_HANDSHAKE_TIMEOUT = _float_env("TUNNEL_CANVAS_HANDSHAKE_TIMEOUT", 25.0)
DEFAULT_REQUEST_TIMEOUT = _float_env("TUNNEL_CANVAS_REQUEST_TIMEOUT", 30.0)


def parse_masters(data: Any) -> list[MasterConfig]:
    """Validate a ``masters`` list (or a mapping holding one)."""
    if data is None:
        return []
    if isinstance(data, dict):
        data = data.get("masters") or []
    if not isinstance(data, list):
        raise ConfigurationError("'masters' must be a list of master definitions")

    masters = []
    for index, entry in enumerate(data):
        try:
            masters.append(MasterConfig.model_validate(entry))
        except PydanticValidationError as e:
            raise ConfigurationError(f"Invalid master #{index + 1}: {e.errors()[0].get('msg', e)}") from e
    return masters


def load_masters(path: Optional[Path | str] = None) -> list[MasterConfig]:
    """Read master configs from ``path`` (default ``MASTERS_FILE``).

    A missing default file simply means no preconfigured masters; an
    explicitly named missing file is an error.
    """
    explicit = path is not None
    path = Path(path) if path is not None else MASTERS_FILE
    if not path.exists():
        if explicit:
            raise ConfigurationError(f"Masters file not found: {path}")
        logger.debug(f"No masters file at {path}")
        return []

    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Cannot parse masters file {path}: {e}") from e

    masters = parse_masters(data)
    logger.info(f"Loaded {len(masters)} master(s) from {path}")
    return masters


def merge_masters(base: Iterable[MasterConfig], override: Iterable[MasterConfig]) -> list[MasterConfig]:
    """Combine two master lists; entries in ``override`` win by id."""
    merged = {m.id: m for m in base}
    merged.update({m.id: m for m in override})
    return list(merged.values())
