"""Local storage hardening helpers."""

from __future__ import annotations

import os
from pathlib import Path


HOME_ENV = "COMMITPAY_HOME"


def default_home() -> Path:
    """State directory, honoring the COMMITPAY_HOME override."""
    override = os.getenv(HOME_ENV)
    return Path(override) if override else Path.home() / ".commitpay"


def ensure_private_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    os.chmod(path, 0o700)


def ensure_private_file(path: Path) -> None:
    if not path.exists():
        path.touch()
    os.chmod(path, 0o600)


def atomic_write_text(path: Path, text: str) -> None:
    """Replace a file's contents via fsync'd temp file and rename."""
    tmp_path = path.with_suffix(path.suffix + f".tmp.{os.getpid()}")
    with open(tmp_path, "w", encoding="utf-8") as f:
        f.write(text)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp_path, path)
    ensure_private_file(path)
