"""pytest configuration.

The repo is usable without installing the package into a virtualenv: running
`pytest` from the repo root must resolve `import ci_monitor` to `./ci_monitor`.
Some runners do not add the repo root to `sys.path`, so we force it here.
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any

import pytest

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))


def _pipeline_payload(
    *,
    project_id: int = 42,
    pipeline_id: int = 1001,
    status: str = "failed",
    project_name: str = "acme/api",
    ref: str = "main",
) -> dict[str, Any]:
    return {
        "object_kind": "pipeline",
        "object_attributes": {
            "id": pipeline_id,
            "status": status,
            "ref": ref,
            "sha": "0a1b2c3d",
            "created_at": "2024-05-01 10:00:00 UTC",
            "finished_at": "2024-05-01 10:04:05 UTC",
            "duration": 245,
            "web_url": f"https://gitlab.example.com/{project_name}/-/pipelines/{pipeline_id}",
        },
        "project": {
            "id": project_id,
            "name": project_name.split("/")[-1],
            "path_with_namespace": project_name,
            "web_url": f"https://gitlab.example.com/{project_name}",
        },
        "user": {"name": "Dana Ops", "username": "dana"},
    }


@pytest.fixture
def pipeline_payload():
    """Factory for GitLab pipeline webhook bodies."""

    return _pipeline_payload
