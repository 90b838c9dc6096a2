"""Read and write ``~/.rlmkit/config.json``."""

import json
from pathlib import Path

from loguru import logger
from pydantic import ValidationError

from rlmkit.config.schema import RLMConfig, normalize_keys


def get_config_path() -> Path:
    return Path.home() / ".rlmkit" / "config.json"


def load_config(config_path: Path | None = None) -> RLMConfig:
    """
    Load the config file. ``RLMKIT_*`` environment variables fill in what it leaves unset.

    A missing file, unparsable JSON or out-of-range values all yield the
    defaults; the problem is logged, never raised.
    """
    path = config_path or get_config_path()
    if not path.exists():
        return RLMConfig()

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        return RLMConfig(**normalize_keys(data))
    except (json.JSONDecodeError, ValidationError, ValueError) as e:
        logger.warning(f"Ignoring config at {path}: {e}")
        return RLMConfig()


def save_config(config: RLMConfig, config_path: Path | None = None) -> Path:
    """Write ``config`` with camelCase keys. The provider API key is not written."""
    path = config_path or get_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)

    data = config.model_dump(by_alias=True)
    data.get("provider", {}).pop("apiKey", None)
    path.write_text(json.dumps(data, indent=2), encoding="utf-8")

    logger.debug(f"Config saved: {path}")
    return path
