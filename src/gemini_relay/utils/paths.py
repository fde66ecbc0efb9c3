# src/gemini_relay/utils/paths.py
"""
Centralized path management for the relay.

Data files (logs, segmentation scratch space) live under
the current working directory unless a root is passed explicitly.
"""

import tempfile
from pathlib import Path
from typing import Optional, Union


def get_default_root() -> Path:
    return Path.cwd()


def get_logs_dir(root: Optional[Union[Path, str]] = None) -> Path:
    """
    Get the logs directory, creating it if needed.

    Args:
        root: Optional root directory. If None, uses get_default_root().
    """
    base = Path(root) if root else get_default_root()
    logs_dir = base / "logs"
    logs_dir.mkdir(parents=True, exist_ok=True)
    return logs_dir


def get_temp_dir(root: Optional[Union[Path, str]] = None) -> Path:
    """
    Get the scratch directory used for audio segmentation jobs.

    Defaults to a `gemini_relay` folder inside the system temp directory so
    that leftovers from crashed jobs never land in the working tree.
    """
    base = Path(root) if root else Path(tempfile.gettempdir()) / "gemini_relay"
    base.mkdir(parents=True, exist_ok=True)
    return base
