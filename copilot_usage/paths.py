"""Platform-specific VS Code storage and log root discovery.

VS Code keeps per-workspace data and per-window logs under a user data
directory that depends on the operating system and the installed edition:

- Windows: %APPDATA%\\Code\\User\\workspaceStorage, %APPDATA%\\Code\\logs
- macOS:   ~/Library/Application Support/Code/User/workspaceStorage
- Linux:   ~/.config/Code/User/workspaceStorage

Both the Stable ("Code") and Insiders ("Code - Insiders") editions are scanned.
"""
from __future__ import annotations

import os
import sys
from pathlib import Path

from copilot_usage import config

EDITIONS = ("Code", "Code - Insiders")


def user_data_base(platform: str | None = None, home: Path | None = None) -> Path:
    """Return the directory that contains the per-edition user data folders."""
    platform = platform or sys.platform
    home = home or Path.home()
    if platform.startswith("win"):
        appdata = os.getenv("APPDATA")
        return Path(appdata) if appdata else home / "AppData" / "Roaming"
    if platform == "darwin":
        return home / "Library" / "Application Support"
    return home / ".config"


def default_storage_roots(platform: str | None = None, home: Path | None = None) -> list[Path]:
    base = user_data_base(platform, home)
    return [base / edition / "User" / "workspaceStorage" for edition in EDITIONS]


def default_log_roots(platform: str | None = None, home: Path | None = None) -> list[Path]:
    base = user_data_base(platform, home)
    return [base / edition / "logs" for edition in EDITIONS]


def storage_roots() -> list[Path]:
    return list(config.STORAGE_ROOTS) or default_storage_roots()


def log_roots() -> list[Path]:
    return list(config.LOG_ROOTS) or default_log_roots()


def edition_label(path: Path | str) -> str:
    return "VS Code Insiders" if "Insiders" in str(path) else "VS Code Stable"
