"""Persist the current room and session state as JSON.

``current-room.json`` is rewritten on every milestone so that an
external supervisor can see which room a capture process is attached to.
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from spacerelay.models.room import Room
from spacerelay.models.session import Session

logger = logging.getLogger(__name__)

CURRENT_ROOM_FILE = "current-room.json"


class MetadataStore:
    """Writes session metadata under ``directory``."""

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)

    @property
    def current_room_path(self) -> Path:
        return self.directory / CURRENT_ROOM_FILE

    def write_current_room(self, session: Session, room: Room | None = None, **extra: Any) -> Path:
        """Atomically replace ``current-room.json``."""
        payload: dict[str, Any] = {
            "updated_at": datetime.now(timezone.utc).isoformat(),
            "session": session.to_dict(),
            "room": room.model_dump(mode="json") if room is not None else {"url": session.room_url},
        }
        payload.update(extra)

        self.directory.mkdir(parents=True, exist_ok=True)
        tmp = self.current_room_path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(payload, indent=2, default=str), encoding="utf-8")
        os.replace(tmp, self.current_room_path)
        logger.debug("Wrote %s", self.current_room_path)
        return self.current_room_path

    def read_current_room(self) -> dict[str, Any] | None:
        if not self.current_room_path.is_file():
            return None
        return json.loads(self.current_room_path.read_text(encoding="utf-8"))
