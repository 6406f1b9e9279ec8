import os
import sys
from pathlib import Path


def platform_data_dir() -> Path:
    """Per-user application data root (where cnocr keeps its models)."""
    if os.name == "nt":
        return Path(os.getenv("APPDATA") or (Path.home() / "AppData" / "Roaming"))
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support"
    xdg_home = os.getenv("XDG_DATA_HOME")
    if xdg_home:
        return Path(xdg_home)
    return Path.home() / ".local" / "share"


def model_install_dir(settings) -> Path:
    """Directory the model installer writes into and `remove(model)` deletes."""
    if settings.MODEL_INSTALL_DIR:
        return Path(settings.MODEL_INSTALL_DIR).expanduser()
    return platform_data_dir() / settings.MODEL_DIR_NAME


def session_root(settings, kind_value: str) -> Path:
    """Parent of every per-session work dir for one dependency kind."""
    return Path(settings.TEMP_DIR) / kind_value
