"""Environment handling helpers for the relay."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Mapping, Optional

from dotenv import find_dotenv, load_dotenv

__all__ = [
    "load_environment",
    "resolve_env_path",
    "env_flag",
]

_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off", ""}


def resolve_env_path(root: Path) -> Path:
    """Locate the most specific ``.env`` file for the repository."""

    explicit = root / ".env"
    if explicit.exists():
        return explicit
    discovered = find_dotenv(str(explicit), usecwd=True)
    if discovered:
        return Path(discovered)
    return explicit


def load_environment(root: Path, override: bool = False) -> None:
    """Load ``.env.local`` then ``.env`` so local overrides take precedence."""

    local = root / ".env.local"
    if local.exists():
        load_dotenv(local, override=override)

    env_path = resolve_env_path(root)
    if env_path.exists():
        load_dotenv(env_path, override=override)

    # Older deployments used NODE_ENV for the runtime environment
    _promote_env("NODE_ENV", "RELAY_ENV")


def _promote_env(source: str, target: str) -> None:
    value = os.getenv(source)
    if value and not os.getenv(target):
        os.environ[target] = value


def env_flag(name: str, default: bool = False, environ: Optional[Mapping[str, str]] = None) -> bool:
    """Read a boolean toggle; raises ``ValueError`` for unrecognised values."""

    source = os.environ if environ is None else environ
    raw = source.get(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUTHY:
        return True
    if value in _FALSY:
        return False
    raise ValueError(f"{name} must be a boolean flag, got {raw!r}")
