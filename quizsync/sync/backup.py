"""Local backup of the last known snapshot and of the device identity.

Best effort only: a failed write is logged and ignored, a missing or corrupt
file reads as "nothing saved". The backup lets a node survive a restart but
is never authoritative; any newer snapshot from the network replaces it.
"""

from __future__ import annotations

import json
import logging
import os
import uuid
from dataclasses import dataclass
from pathlib import Path

from quizsync.config import IDENTITY_FILE, SNAPSHOT_FILE
from quizsync.networking.serialization import snapshot_from_dict, snapshot_to_dict
from quizsync.quiz.state import QuizSnapshot

logger = logging.getLogger(__name__)


def new_device_id() -> str:
    return uuid.uuid4().hex[:12]


def new_player_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True, slots=True)
class PlayerIdentity:
    """Who this device is. player_id/name are set once it has joined."""
    device_id: str
    player_id: str | None = None
    name: str | None = None


class LocalBackup:
    """Snapshot and identity files in one state directory."""

    def __init__(self, directory: str | Path) -> None:
        self._dir = Path(directory)

    @property
    def directory(self) -> Path:
        return self._dir

    # --- Snapshot ---

    def load_snapshot(self) -> QuizSnapshot | None:
        raw = self._read_json(SNAPSHOT_FILE)
        if raw is None:
            return None
        try:
            return snapshot_from_dict(raw)
        except ValueError as e:
            logger.warning("Ignoring corrupt snapshot backup: %s", e)
            return None

    def save_snapshot(self, snapshot: QuizSnapshot) -> bool:
        return self._write_json(SNAPSHOT_FILE, snapshot_to_dict(snapshot))

    # --- Identity ---

    def load_identity(self) -> PlayerIdentity:
        """Return the stored identity, creating a device id on first use."""
        raw = self._read_json(IDENTITY_FILE)
        if isinstance(raw, dict) and isinstance(raw.get("deviceId"), str):
            player_id = raw.get("playerId")
            name = raw.get("playerName")
            return PlayerIdentity(
                device_id=raw["deviceId"],
                player_id=player_id if isinstance(player_id, str) else None,
                name=name if isinstance(name, str) else None,
            )
        if raw is not None:
            logger.warning("Ignoring corrupt identity backup")
        identity = PlayerIdentity(device_id=new_device_id())
        self.save_identity(identity)
        return identity

    def save_identity(self, identity: PlayerIdentity) -> bool:
        return self._write_json(IDENTITY_FILE, {
            "deviceId": identity.device_id,
            "playerId": identity.player_id,
            "playerName": identity.name,
        })

    # --- Files ---

    def _read_json(self, filename: str) -> object | None:
        path = self._dir / filename
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning("Cannot read %s: %s", path, e)
            return None
        except UnicodeDecodeError as e:
            logger.warning("Ignoring corrupt backup %s: %s", path, e)
            return None
        try:
            return json.loads(text)
        except (json.JSONDecodeError, RecursionError) as e:
            logger.warning("Ignoring corrupt backup %s: %s", path, e)
            return None

    def _write_json(self, filename: str, data: object) -> bool:
        path = self._dir / filename
        tmp = path.with_suffix(path.suffix + ".tmp")
        try:
            self._dir.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps(data), encoding="utf-8")
            os.replace(tmp, path)
        except OSError as e:
            logger.warning("Cannot write %s: %s", path, e)
            return False
        return True
