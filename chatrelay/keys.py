"""API key loading for the relay.

Keys are read from ~/.chatrelay/keys.env and a project-level .env with
this priority:
  1. Environment variables (highest, already set in the shell)
  2. ~/.chatrelay/keys.env
  3. .env in the current directory
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

logger = logging.getLogger(__name__)

# Directory for user-level chatrelay configuration
CHATRELAY_HOME = Path.home() / ".chatrelay"
KEYS_FILE = CHATRELAY_HOME / "keys.env"


def load_keys_env(files: list[Path] | None = None) -> None:
    """Load KEY=VALUE files into os.environ without overwriting existing vars.

    Args:
        files: Files to read, earliest wins. Defaults to
            ~/.chatrelay/keys.env followed by ./.env.
    """
    if files is None:
        files = [KEYS_FILE, Path.cwd() / ".env"]
    for env_file in files:
        if env_file.is_file():
            _load_env_file(env_file)


def _load_env_file(path: Path) -> None:
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError:
        logger.debug("Could not read %s", path)
        return

    for line in lines:
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        key = key.removeprefix("export ").strip()
        value = value.strip().strip("'\"")
        if key and not os.environ.get(key):
            os.environ[key] = value
            logger.debug("Loaded %s from %s", key, path)
