"""
Explicit dotenv loading for local runs.

Production (``ENVIRONMENT=prod``, the default) never reads dotenv files:
credentials come from the process environment only. Elsewhere ``.env`` is
loaded first and ``.env.local`` overrides it.

Must not import ``position_ladder.config.config``.
"""
from __future__ import annotations

import os
from pathlib import Path
from typing import List

from dotenv import load_dotenv

# (file name, overrides already-set variables)
DOTENV_FILES = ((".env", False), (".env.local", True))


def is_prod_environment() -> bool:
    return (os.getenv("ENVIRONMENT") or "prod").strip().lower() == "prod"


def load_dotenv_files(*, repo_root: Path | None = None) -> List[Path]:
    """Load dotenv files outside prod. Returns the files that were read."""
    if is_prod_environment():
        return []

    root = repo_root or Path(__file__).resolve().parents[2]
    loaded = []
    for name, override in DOTENV_FILES:
        path = root / name
        if path.is_file():
            load_dotenv(dotenv_path=path, override=override)
            loaded.append(path)
    return loaded
