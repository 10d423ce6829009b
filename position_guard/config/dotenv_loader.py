"""
Local credentials from .env files.

Exchange keys, DATABASE_URL and ALERT_WEBHOOK_URL come from the process
environment in prod. For dev runs they may live in .env (shared defaults)
and .env.local (per-machine overrides) at the project root.

Imported by run.py before the CLI, so it must not import the config models.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import List

from dotenv import load_dotenv

PROJECT_ROOT = Path(__file__).resolve().parents[2]


def load_dotenv_files(*, repo_root: Path | None = None) -> List[Path]:
    """Load .env then .env.local unless ENVIRONMENT is prod. Returns the files read."""
    if (os.getenv("ENVIRONMENT") or "prod").strip().lower() == "prod":
        return []

    root = repo_root or PROJECT_ROOT
    loaded = []
    for name, override in ((".env", False), (".env.local", True)):
        path = root / name
        if path.exists():
            load_dotenv(dotenv_path=path, override=override)
            loaded.append(path)
    return loaded
