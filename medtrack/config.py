# medtrack/config.py
from __future__ import annotations

import os
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

DATA_DIR_NAME = "medtrack_data"


def _is_writable_dir(p: Path) -> bool:
    try:
        p.mkdir(parents=True, exist_ok=True)
        t = p / f".writetest.{uuid.uuid4().hex}"
        t.write_text("ok", encoding="utf-8")
        t.unlink(missing_ok=True)
        return True
    except OSError:
        return False


def app_base_dir(override: Optional[str] = None) -> Path:
    """First writable of: explicit override, $MEDTRACK_HOME, $ANDROID_PRIVATE/medtrack_data, ./medtrack_data (cwd)."""
    candidates = []
    if override:
        candidates.append(Path(override))
    home = os.environ.get("MEDTRACK_HOME", "").strip()
    if home:
        candidates.append(Path(home))
    private = os.environ.get("ANDROID_PRIVATE", "").strip()
    if private:
        candidates.append(Path(private) / DATA_DIR_NAME)

    for d in candidates:
        if _is_writable_dir(d):
            return d

    d = Path.cwd() / DATA_DIR_NAME
    d.mkdir(parents=True, exist_ok=True)
    return d


@dataclass
class AppConfig:
    data_dir: Path
    store_path: Path
    key_path: Path
    log_path: Path
    ephemeral: bool = False

    @classmethod
    def from_env(cls, data_dir: Optional[str] = None, ephemeral: bool = False) -> "AppConfig":
        base = app_base_dir(data_dir)
        return cls(
            data_dir=base,
            store_path=base / "store",
            key_path=base / ".enc_key",
            log_path=base / "app.log",
            ephemeral=bool(ephemeral),
        )
