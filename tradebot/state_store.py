from __future__ import annotations

import json
import logging
import os
import time
from pathlib import Path
from typing import Any, Dict, Optional

from tradebot.errors import PersistenceError


log = logging.getLogger(__name__)


class StateStore:
    """
    Single JSON snapshot on disk. Writes go to a temp sibling and are renamed into place,
    so a crash mid-write leaves the previous snapshot intact.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def save(self, doc: Dict[str, Any]) -> None:
        tmp = self.path.with_name(f"{self.path.name}.tmp_{os.getpid()}")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            payload = json.dumps(doc, indent=2, ensure_ascii=False)
            with open(tmp, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.path)
        except (OSError, TypeError, ValueError) as e:
            try:
                tmp.unlink()
            except OSError:
                pass
            raise PersistenceError(f"Failed to write state to {self.path}: {e}") from e
        log.debug("Trading state saved to %s", self.path)

    def load(self) -> Optional[Dict[str, Any]]:
        """
        None when there is no snapshot yet. An unreadable snapshot is moved aside
        (`<name>.corrupted_<ts>`) and reported as PersistenceError.
        """
        if not self.path.exists():
            return None
        try:
            with open(self.path, encoding="utf-8") as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            self.quarantine()
            raise PersistenceError(f"Failed to read state from {self.path}: {e}") from e

    def quarantine(self) -> Optional[Path]:
        target = self.path.with_name(f"{self.path.name}.corrupted_{int(time.time())}")
        try:
            self.path.rename(target)
        except OSError as e:
            log.warning("Could not move corrupted state file %s aside: %s", self.path, e)
            return None
        log.warning("Moved corrupted state file to %s", target)
        return target
