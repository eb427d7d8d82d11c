from __future__ import annotations

import os
from pathlib import Path
from typing import Iterable


PROJECT_ROOT = Path(__file__).resolve().parents[3]
SRC_DIR = PROJECT_ROOT / "src"
DATA_DIR = Path(os.getenv("DEEPLOOM_DATA_DIR", PROJECT_ROOT / "data")).expanduser()

LOGS_DIR = DATA_DIR / "logs"
PACKETS_DIR = DATA_DIR / "packets"


def ensure_directories(paths: Iterable[Path] | None = None) -> None:
    """Crée les répertoires runtime (data, logs, packets) s'ils n'existent pas."""

    targets = list(paths) if paths is not None else [DATA_DIR, LOGS_DIR, PACKETS_DIR]
    for directory in targets:
        directory.mkdir(parents=True, exist_ok=True)
