"""Centralized workspace path management.

All tool-managed artifacts go under var/ (configurable via AKTIS_WORKDIR).
"""

from pathlib import Path
from typing import Optional

from .config import SETTINGS, Settings


def workdir(settings: Optional[Settings] = None) -> Path:
    """Tool-managed workspace directory (default: var/)"""
    return Path((settings or SETTINGS).AKTIS_WORKDIR).resolve()


def database(settings: Optional[Settings] = None) -> Path:
    """Embedded cache file (default: var/aktis.db)"""
    return (settings or SETTINGS).database_path().resolve()


def logs(settings: Optional[Settings] = None) -> Path:
    """Log files directory (default: var/logs/)"""
    return workdir(settings) / "logs"


def ensure_all(settings: Optional[Settings] = None) -> None:
    """Create all workspace directories if they don't exist."""
    for dir_path in (workdir(settings), logs(settings), database(settings).parent):
        dir_path.mkdir(parents=True, exist_ok=True)
