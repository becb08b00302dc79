from __future__ import annotations

import tomllib
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path

DIST_NAME = "gitlab-ci-monitor"
_PYPROJECT = Path(__file__).resolve().parents[1] / "pyproject.toml"


def _pyproject_version() -> str | None:
    if not _PYPROJECT.exists():
        return None
    data = tomllib.loads(_PYPROJECT.read_text(encoding="utf-8"))
    v = data.get("project", {}).get("version")
    return v.strip() if isinstance(v, str) and v.strip() else None


def get_version() -> str:
    """Installed distribution version, else the checkout's pyproject.toml, else 0.0.0."""

    try:
        return version(DIST_NAME)
    except PackageNotFoundError:
        return _pyproject_version() or "0.0.0"
