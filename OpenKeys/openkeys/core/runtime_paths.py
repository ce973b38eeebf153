from __future__ import annotations

import os
import sys
from pathlib import Path


def project_root() -> Path:
    return Path(__file__).resolve().parents[2]


def app_local_data_dir(app_name: str) -> Path | None:
    name = str(app_name or "").strip()
    if not name:
        return None
    local_app_data = os.environ.get("LOCALAPPDATA")
    if local_app_data:
        return Path(local_app_data) / name
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / name
    xdg_config = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config:
        return Path(xdg_config) / name.lower()
    home = os.environ.get("HOME")
    if home:
        return Path(home) / ".config" / name.lower()
    return None
