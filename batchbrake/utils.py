import json
import logging
import os
import platform
import subprocess
import sys
from functools import lru_cache
from typing import List, Optional, Sequence

from dotenv import load_dotenv, find_dotenv

from batchbrake.errors import SourceDeletionError

logger = logging.getLogger(__name__)


def _load_environment() -> None:
    explicit_path = os.environ.get("BATCHBRAKE_ENV_FILE")
    if explicit_path:
        load_dotenv(explicit_path, override=False)
        return
    dotenv_path = find_dotenv(usecwd=True)
    if dotenv_path:
        load_dotenv(dotenv_path, override=False)


_load_environment()


def ensure_directory(path):
    resolved = os.path.abspath(os.path.expanduser(str(path)))
    os.makedirs(resolved, exist_ok=True)
    return resolved


@lru_cache(maxsize=1)
def get_user_settings_dir():
    override = os.environ.get("BATCHBRAKE_SETTINGS_DIR")
    if override:
        return ensure_directory(override)

    from platformdirs import user_config_dir

    if platform.system() != "Windows":
        legacy_dir = os.path.join(os.path.expanduser("~"), ".config", "batchbrake")
        if os.path.exists(legacy_dir):
            return ensure_directory(legacy_dir)

    config_dir = user_config_dir("batchbrake", appauthor=False, roaming=True, ensure_exists=True)
    return ensure_directory(config_dir)


@lru_cache(maxsize=1)
def get_user_cache_root():
    override = os.environ.get("BATCHBRAKE_CACHE_DIR")
    if override:
        return ensure_directory(override)

    from platformdirs import user_cache_dir

    return ensure_directory(user_cache_dir("batchbrake", appauthor=False))


def get_user_cache_path(folder=None):
    base = get_user_cache_root()
    if folder:
        return ensure_directory(os.path.join(base, folder))
    return base


def get_user_config_path():
    return os.path.join(get_user_settings_dir(), "config.json")


def get_session_path():
    override = os.environ.get("BATCHBRAKE_SESSION_PATH")
    if override:
        target = os.path.abspath(os.path.expanduser(override))
        ensure_directory(os.path.dirname(target))
        return target
    return os.path.join(get_user_settings_dir(), "session.json")


def load_config():
    try:
        with open(get_user_config_path(), "r", encoding="utf-8") as f:
            return json.load(f)
    except Exception:
        return {}


def save_config(config):
    try:
        with open(get_user_config_path(), "w", encoding="utf-8") as f:
            json.dump(config, f, indent=2)
    except Exception as exc:
        logger.warning("Failed to save config: %s", exc)


default_encoding = sys.getfilesystemencoding()


def create_process(cmd: Sequence[str]) -> "subprocess.Popen[str]":
    """Start ``cmd`` with stdout/stderr merged into one line-buffered text pipe.

    Text mode uses universal newlines, so carriage-return progress updates
    arrive as separate lines.
    """
    kwargs = {
        "stdout": subprocess.PIPE,
        "stderr": subprocess.STDOUT,
        "stdin": subprocess.DEVNULL,
        "bufsize": 1,
        "text": True,
        "encoding": default_encoding,
        "errors": "replace",
    }

    if platform.system() == "Windows":
        startupinfo = subprocess.STARTUPINFO()  # type: ignore[attr-defined]
        startupinfo.dwFlags |= subprocess.STARTF_USESHOWWINDOW  # type: ignore[attr-defined]
        startupinfo.wShowWindow = subprocess.SW_HIDE  # type: ignore[attr-defined]
        kwargs.update(
            {
                "startupinfo": startupinfo,
                "creationflags": subprocess.CREATE_NO_WINDOW,  # type: ignore[attr-defined]
            }
        )

    logger.debug("Executing: %s", " ".join(cmd))
    return subprocess.Popen(list(cmd), **kwargs)


def kill_process(proc: "subprocess.Popen[str]") -> None:
    """Send a hard kill without waiting; safe to call from any thread."""
    try:
        if proc.poll() is None:
            proc.kill()
    except OSError as exc:
        logger.debug("Kill of pid %s failed: %s", getattr(proc, "pid", "?"), exc)


def terminate_process(proc: "subprocess.Popen[str]", timeout: float = 5.0) -> Optional[int]:
    """Kill ``proc`` and wait at most ``timeout`` seconds for it to exit."""
    kill_process(proc)
    try:
        return proc.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        logger.warning("Process %s did not exit within %.1fs after kill", proc.pid, timeout)
        return None


def delete_source_file(path) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        return
    except OSError as exc:
        raise SourceDeletionError(f"Could not delete source file {path}: {exc}") from exc


def format_file_size(size_bytes: int) -> str:
    sizes: List[str] = ["B", "KB", "MB", "GB", "TB"]
    size = float(size_bytes)
    index = 0
    while size >= 1024 and index < len(sizes) - 1:
        size /= 1024
        index += 1
    text = f"{size:.2f}".rstrip("0").rstrip(".")
    return f"{text} {sizes[index]}"
