"""Environment variable loading utilities.

Cloud Functions receive their configuration through the environment; local
runs and CLIs read a ``.env`` file from the working directory or any parent.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


def _candidate_env_files(start: Path) -> List[Path]:
    candidates = [parent / ".env" for parent in reversed(start.parents)]
    candidates.append(start / ".env")
    return [path for path in candidates if path.exists()]


def load_env(env_file: Optional[str] = None, override: bool = False) -> None:
    """Load environment variables from .env files.

    Args:
        env_file: Explicit path to a .env file. If None, every .env found from
                 the filesystem root down to the current directory is loaded,
                 so the nearest file wins when ``override`` is set.
        override: Whether to override existing environment variables.
    """
    if env_file:
        paths = [Path(env_file)] if Path(env_file).exists() else []
    else:
        paths = _candidate_env_files(Path.cwd())

    if not paths:
        logger.debug("No .env file found, using system environment")
        return

    for path in dict.fromkeys(paths):
        load_dotenv(path, override=override)
        logger.debug("Loaded environment from %s", path)


def int_from_env(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning("Invalid integer for %s=%s, using %s", name, value, default)
        return default


def float_from_env(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning("Invalid float for %s=%s, using %s", name, value, default)
        return default
