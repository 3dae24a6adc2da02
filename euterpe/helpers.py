"""Filesystem, logging and file-name helpers used throughout the server."""

from __future__ import annotations

import logging
import os
import re
import signal
from pathlib import Path

if os.name == "nt":
    EUTERPE_DIR = "euterpe"
    HTTPMS_DIR = "httpms"
    STOP_SIGNALS: tuple[signal.Signals, ...] = (signal.SIGINT, signal.SIGTERM)
else:
    # Directory in the user's home where the server keeps its files.
    EUTERPE_DIR = ".euterpe"
    # Directory used before the rename. When present it wins over EUTERPE_DIR,
    # on the presumption that the files have not been migrated yet.
    HTTPMS_DIR = ".httpms"
    STOP_SIGNALS = (signal.SIGINT, signal.SIGKILL, signal.SIGTERM)

_INT64_MAX = 2**63 - 1

_TRACK_NUMBER_RULES = tuple(
    re.compile(rule, re.ASCII)
    for rule in (
        # High confidence: the name starts with the number and some punctuation.
        r"^(\d+)[ \-\t\.\)\]].+",
        # Lower confidence: "Iron Maiden - 7 - Quest For Fire.mp3" and alike.
        r".+- (\d+) -.+",
        r".+ -(\d+)- .+",
        # "[Iron Maiden] - 06__Wasting love.mp3"
        r".+ - (\d+)_.+",
        # "METALLICA - (04) One.mp3"
        r".+ - \((\d+)\) .+",
        # "Fatboy Slim - [14] Brimful Of Asha (Cornershop).mp3"
        r".+ - \[(\d+)\] .+",
        # "Nightwish-07-Ocean_Soul.mp3"
        r"[\w]+-(\d+)-[\w]+",
        # "#11_12_Chelovek na Lune.mp3"
        r"^#\d+_(\d+)_.+",
    )
)

_log_handler: logging.Handler | None = None


def absolute_path(path: str, relative_root: str) -> str:
    """Return `path` unchanged when absolute, otherwise joined to `relative_root`."""
    path = os.fspath(path)
    if os.path.isabs(path):
        return path
    return os.path.normpath(os.path.join(os.fspath(relative_root), path))


def project_user_path(home: str | os.PathLike[str] | None = None) -> Path:
    """Return the directory for the user's files, creating it when missing."""
    home_dir = Path(home) if home is not None else Path.home()

    deprecated = home_dir / HTTPMS_DIR
    if deprecated.exists():
        return deprecated

    path = home_dir / EUTERPE_DIR
    path.mkdir(mode=0o750, parents=True, exist_ok=True)
    return path


def set_logs_file(log_file_path: str | os.PathLike[str]) -> logging.Handler:
    """Send the log records of the root logger to `log_file_path` (appending).

    A handler installed by a previous call is removed and closed. The new
    handler is returned.
    """
    global _log_handler

    path = Path(log_file_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path, mode="a", encoding="utf-8")
    handler.setFormatter(
        logging.Formatter("%(asctime)s %(message)s", datefmt="%Y/%m/%d %H:%M:%S")
    )

    root = logging.getLogger()
    if _log_handler is not None:
        root.removeHandler(_log_handler)
        _log_handler.close()
    root.addHandler(handler)
    if root.level > logging.INFO:
        root.setLevel(logging.INFO)

    _log_handler = handler
    return handler


def set_up_pid_file(pid_file: str | os.PathLike[str]) -> None:
    """Create `pid_file` holding the ID of the current process."""
    fh = open(pid_file, "w", encoding="ascii")
    try:
        with fh:
            fh.write(str(os.getpid()))
    except OSError:
        remove_pid_file(pid_file)
        raise


def remove_pid_file(pid_file: str | os.PathLike[str]) -> None:
    """Remove `pid_file`, ignoring any error."""
    try:
        os.remove(pid_file)
    except OSError:
        pass


def guess_track_number(track_file_path: str | os.PathLike[str]) -> int:
    """Guess a track number from the file name, returning 0 when unsure."""
    base = _base_name(os.fspath(track_file_path))
    if not base:
        return 0

    for rule in _TRACK_NUMBER_RULES:
        matched = rule.search(base)
        if matched is not None:
            return _to_int64_or_zero(matched.group(1))
    return 0


def _base_name(path: str) -> str:
    normalised = path.replace(os.sep, "/").rstrip("/")
    return normalised.rsplit("/", 1)[-1]


def _to_int64_or_zero(text: str) -> int:
    number = int(text)
    return number if number <= _INT64_MAX else 0