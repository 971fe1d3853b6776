"""
Storage path resolution.

The database lives under the per-user application data directory that
each platform conventionally uses:

- macOS:   ~/Library/Application Support/BrowserTrace
- Windows: ~/AppData/Roaming/BrowserTrace
- other:   ~/.local/share/BrowserTrace
"""
import sys
from pathlib import Path

from .config import Settings

APP_DIR_NAME = "BrowserTrace"


def default_data_dir(platform: str | None = None, home: Path | None = None) -> Path:
    """Return the platform-conventional data directory (not created)."""
    platform = platform or sys.platform
    home = home or Path.home()

    if platform == "darwin":
        return home / "Library" / "Application Support" / APP_DIR_NAME
    if platform.startswith("win"):
        return home / "AppData" / "Roaming" / APP_DIR_NAME
    return home / ".local" / "share" / APP_DIR_NAME


def database_path(settings: Settings) -> Path:
    """
    Return the database file path, creating its directory if absent.

    BROWSETRACE_DATA_DIR overrides the platform default.
    """
    data_dir = settings.DATA_DIR or default_data_dir()
    data_dir.mkdir(parents=True, exist_ok=True)
    return data_dir / settings.DB_FILENAME
