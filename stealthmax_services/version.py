"""
Version helpers for StealthMax services.

- ``__version__`` is the semantic version for packaging.
- ``git_commit()`` returns the short commit of the running build when known.
- ``build_version()`` composes a PEP 440 local version with that commit.
"""

from __future__ import annotations

import os
import subprocess
from pathlib import Path
from typing import Optional

# Bump this when making a release; use semver (MAJOR.MINOR.PATCH)
__version__ = "1.0.0"

SERVICE_NAME = "stealthmax-substream"


def git_commit() -> Optional[str]:
    """
    Short commit hash from ``BUILD_SHA``/``GIT_COMMIT`` or, in a checkout,
    from ``git rev-parse``. ``None`` when neither is available.
    """
    env_sha = os.getenv("BUILD_SHA") or os.getenv("GIT_COMMIT")
    if env_sha:
        return env_sha[:12]
    root = Path(__file__).resolve().parent.parent
    if not (root / ".git").exists():
        return None
    try:
        out = subprocess.check_output(
            ["git", "-C", str(root), "rev-parse", "--short", "HEAD"],
            stderr=subprocess.DEVNULL,
            timeout=1.5,
        )
    except (OSError, subprocess.SubprocessError):
        return None
    return out.decode().strip() or None


def build_version(base: str = __version__) -> str:
    """
    Examples
    --------
    - "1.0.0"             (no git available)
    - "1.0.0+gabc1234"    (commit attached)
    """
    commit = git_commit()
    return f"{base}+g{commit}" if commit else base


__all__ = ["__version__", "SERVICE_NAME", "git_commit", "build_version"]
