"""Per-device sync bookmarks persisted as a JSON file.

``save`` copies the current primary to ``<path>.bak`` before replacing it, so
one good generation always survives a torn or corrupt write. ``load`` tries the
primary, then the backup, then falls back to an empty state ("never synced"),
which is safe because ingestion always re-derives a bounded window.
"""
import logging
import os
import shutil
from datetime import datetime
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ValidationError

from punchclock.shifts import as_utc, utc_now

logger = logging.getLogger(__name__)


class SyncCursor(BaseModel):
    device_id: str
    last_synced_at: datetime


class CursorState(BaseModel):
    devices: dict[str, SyncCursor] = {}
    last_run: Optional[datetime] = None


class CursorStore:
    def __init__(self, path: Path | str):
        self.path = Path(path)
        self.backup_path = self.path.with_name(self.path.name + ".bak")
        self.state = CursorState()
        self.loaded_from: Optional[str] = None

    def _read(self, path: Path) -> CursorState:
        return CursorState.model_validate_json(path.read_text(encoding="utf-8"))

    def load(self) -> CursorState:
        for label, path in (("primary", self.path), ("backup", self.backup_path)):
            if not path.exists():
                continue
            try:
                self.state = self._read(path)
            except (OSError, ValueError, ValidationError) as exc:
                logger.warning("cursor file %s unreadable (%s): %s", path, label, exc)
                continue
            self.loaded_from = label
            if label == "backup":
                logger.warning("recovered sync cursors from backup %s", path)
            return self.state
        if self.path.exists() or self.backup_path.exists():
            logger.warning("no readable cursor file, starting from a fresh state")
        self.state = CursorState()
        self.loaded_from = "fresh"
        return self.state

    def backup(self) -> None:
        if not self.path.exists():
            return
        try:
            self._read(self.path)
        except (OSError, ValueError, ValidationError):
            logger.warning("not backing up unreadable cursor file %s", self.path)
            return
        shutil.copy2(self.path, self.backup_path)

    def save(self) -> None:
        self.backup()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        tmp_path.write_text(self.state.model_dump_json(indent=2), encoding="utf-8")
        os.replace(tmp_path, self.path)

    def get(self, device_id: str) -> Optional[datetime]:
        cursor = self.state.devices.get(device_id)
        if cursor is None:
            return None
        return as_utc(cursor.last_synced_at)

    def advance(self, device_id: str, synced_at: datetime) -> datetime:
        candidate = as_utc(synced_at)
        current = self.get(device_id)
        if current is not None and current >= candidate:
            return current
        self.state.devices[device_id] = SyncCursor(device_id=device_id, last_synced_at=candidate)
        return candidate

    def mark_run(self, at: Optional[datetime] = None) -> None:
        self.state.last_run = at or utc_now()
