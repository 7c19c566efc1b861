"""
Version helpers for the vault package.

- Exposes __version__.
- Best-effort detection from:
    1) VAULT_VERSION env var (authoritative override)
    2) installed distribution metadata ("privacy-vault")
    3) fallback DEFAULT_VERSION
"""

from __future__ import annotations

import os
from importlib import metadata

DEFAULT_VERSION = "0.1.0"
DIST_NAME = "privacy-vault"


def _detect() -> str:
    env = os.environ.get("VAULT_VERSION")
    if env:
        return env.strip()
    try:
        return metadata.version(DIST_NAME)
    except metadata.PackageNotFoundError:
        return DEFAULT_VERSION


__version__ = _detect()

__all__ = ["__version__", "DEFAULT_VERSION"]
