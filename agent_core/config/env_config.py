"""
Environment configuration - .env discovery and typed environment lookups

Budgets, memory and LLM settings are all read through EnvConfig so that a
malformed value degrades to its default with a warning instead of aborting
the run at import time.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Callable, Dict, Optional, TypeVar

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

T = TypeVar("T")

_TRUE_VALUES = frozenset({"true", "1", "yes", "on"})
_SEARCH_DEPTH = 3


class EnvConfig:
    """
    Typed access to process environment variables.

    Variables already exported in the process win over values found in a
    .env file unless ``override`` is requested.
    """

    @staticmethod
    def find_env_file(start: Optional[Path] = None) -> Optional[Path]:
        """Return the nearest .env at or above ``start`` (cwd by default)."""
        directory = (start or Path.cwd()).resolve()
        for candidate_dir in [directory, *directory.parents][:_SEARCH_DEPTH + 1]:
            candidate = candidate_dir / ".env"
            if candidate.is_file():
                return candidate
        return None

    @staticmethod
    def load_env_file(path: Optional[str] = None, override: bool = False) -> bool:
        """
        Load a .env file into the process environment.

        Args:
            path: Explicit file (default: nearest .env in cwd or its parents)
            override: Replace variables that are already set

        Returns:
            True if a file was found and loaded
        """
        env_path = Path(path) if path else EnvConfig.find_env_file()
        if env_path is None or not env_path.is_file():
            logger.debug("[CONFIG] No .env file found")
            return False

        load_dotenv(env_path, override=override)
        logger.debug(f"[CONFIG] Loaded environment from {env_path}")
        return True

    @staticmethod
    def _parse(key: str, default: T, convert: Callable[[str], T]) -> T:
        raw = os.getenv(key)
        if raw is None or raw.strip() == "":
            return default
        try:
            return convert(raw.strip())
        except ValueError:
            logger.warning(f"[CONFIG] Ignoring invalid value {raw!r} for {key}; using {default!r}")
            return default

    @staticmethod
    def get_bool(key: str, default: bool = False) -> bool:
        return EnvConfig._parse(key, default, lambda raw: raw.lower() in _TRUE_VALUES)

    @staticmethod
    def get_int(key: str, default: int = 0) -> int:
        return EnvConfig._parse(key, default, int)

    @staticmethod
    def get_float(key: str, default: float = 0.0) -> float:
        return EnvConfig._parse(key, default, float)

    @staticmethod
    def get_json(key: str, default: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        """Read a JSON object (e.g. per-tool retry policies keyed by tool name)."""

        def convert(raw: str) -> Dict[str, Any]:
            value = json.loads(raw)
            if not isinstance(value, dict):
                raise ValueError(f"expected a JSON object, got {type(value).__name__}")
            return value

        return EnvConfig._parse(key, default, convert)
