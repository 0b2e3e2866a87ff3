"""
Config loader for chatfeedback.
Reads config.yaml once at startup. All other modules import from here.
${ENV_VAR} references are resolved against the environment after .env is loaded.
"""

import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path

import yaml
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

_CONFIG_PATH = Path(__file__).parent.parent / "config.yaml"

_config: dict | None = None

DEFAULT_CONTEXT_MSG_LIMIT = -1
DEFAULT_MAX_MSG_SIZE = 1000


@dataclass(frozen=True)
class Limits:
    """Send-gating limits handed to clients via /api/config."""
    context_msg_limit: int = DEFAULT_CONTEXT_MSG_LIMIT
    max_msg_size: int = DEFAULT_MAX_MSG_SIZE


def _resolve_env_vars(value: str) -> str:
    """Replace ${ENV_VAR} patterns with actual environment variable values."""
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, "")
    return re.sub(r"\$\{(\w+)\}", replacer, value)


def _walk_and_resolve(obj):
    """Recursively resolve env vars in all string values."""
    if isinstance(obj, dict):
        return {k: _walk_and_resolve(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_walk_and_resolve(v) for v in obj]
    elif isinstance(obj, str):
        return _resolve_env_vars(obj)
    return obj


def load_config(path: Path | None = None) -> dict:
    """Load and cache config from YAML file."""
    global _config
    if _config is not None:
        return _config

    config_path = path or _CONFIG_PATH
    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    _config = _walk_and_resolve(raw)
    return _config


def get_config() -> dict:
    """Return cached base config, loading if necessary."""
    if _config is None:
        return load_config()
    return _config


def _as_int(value, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        logger.warning("Ignoring non-integer limit %r, using %d", value, default)
        return default


def get_limits(cfg: dict | None = None) -> Limits:
    """
    Parse the limits block. Blank values (unset env vars) fall back to the
    defaults: unlimited context, 1000 words per message.
    """
    cfg = cfg if cfg is not None else get_config()
    limits = cfg.get("limits") or {}
    return Limits(
        context_msg_limit=_as_int(limits.get("context_msg_limit"), DEFAULT_CONTEXT_MSG_LIMIT),
        max_msg_size=_as_int(limits.get("max_msg_size"), DEFAULT_MAX_MSG_SIZE),
    )


def get_models(cfg: dict | None = None) -> list[dict]:
    """Return the model catalog offered to clients."""
    cfg = cfg if cfg is not None else get_config()
    models = []
    for entry in cfg.get("models") or []:
        if isinstance(entry, str):
            entry = {"id": entry}
        if not entry.get("id"):
            continue
        models.append({
            "id": entry["id"],
            "name": entry.get("name", entry["id"]),
            "provider": entry.get("provider", ""),
            "category": entry.get("category", ""),
        })
    return models
