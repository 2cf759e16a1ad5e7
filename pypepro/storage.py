"""Local persistence: presets, paired devices and app settings in SQLite.

Values are JSON-encoded. Factory presets are seeded once on first open and
are read-only; custom presets are created and deleted but never updated in
place.
"""

import json
import logging
import sqlite3
from typing import Any, Optional

from pypepro.errors import PresetError, PresetNotFoundError, ReadOnlyPresetError
from pypepro.models import ControlValues, DeviceRecord, Preset, PresetCategory

DEFAULT_DATABASE = "pepro.db"

# Fixed keys of the settings table
LAST_SETTINGS_KEY = "LAST_SETTINGS"
THEME_KEY = "THEME"
HAPTICS_KEY = "HAPTICS_ENABLED"
LAST_CONNECTED_ID_KEY = "LAST_CONNECTED_DEVICE_ID"

# Genre presets shipped with the app
FACTORY_PRESETS = (
    ("Blues", ControlValues(volume=75, bass=70, treble=65, mid=60, tone=True, mixed=True)),
    ("Classical", ControlValues(volume=60, bass=45, treble=60, mid=55, tone=True)),
    ("Country", ControlValues(volume=70, bass=55, treble=65, mid=60, tone=True)),
    ("Disco", ControlValues(volume=80, bass=75, treble=60, mid=50, surround=True, mixed=True)),
    ("Hip-hop", ControlValues(volume=80, bass=85, treble=55, mid=50, surround=True)),
    ("Jazz", ControlValues(volume=65, bass=60, treble=60, mid=65, tone=True)),
    ("Metal", ControlValues(volume=85, bass=70, treble=75, mid=45, tone=True)),
    ("Pop", ControlValues(volume=75, bass=65, treble=65, mid=55, surround=True)),
    ("Reggae", ControlValues(volume=70, bass=80, treble=55, mid=50, mixed=True)),
    ("Rock", ControlValues(volume=80, bass=70, treble=70, mid=55, tone=True)),
)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS presets (
    id INTEGER PRIMARY KEY NOT NULL,
    name TEXT NOT NULL,
    type TEXT NOT NULL,
    preset_values TEXT
);
CREATE TABLE IF NOT EXISTS devices (
    id TEXT PRIMARY KEY NOT NULL,
    name TEXT NOT NULL,
    ssid TEXT NOT NULL,
    ipAddress TEXT,
    serialNo TEXT,
    modelCode TEXT
);
CREATE TABLE IF NOT EXISTS settings (
    key TEXT PRIMARY KEY NOT NULL,
    value TEXT
);
"""


class PresetStore:
    """list/get/put/delete over named control snapshots."""

    def __init__(self, connection: sqlite3.Connection):
        self._connection = connection
        self._logger = logging.getLogger(__name__)

    def seed_factory_presets(self):
        """Insert the factory presets if none exist yet."""
        (count,) = self._connection.execute(
            "SELECT COUNT(*) FROM presets WHERE type = ?;", (PresetCategory.FACTORY.value,)
        ).fetchone()
        if count:
            return
        with self._connection:
            self._connection.executemany(
                "INSERT INTO presets (name, type, preset_values) VALUES (?, ?, ?);",
                [(name, PresetCategory.FACTORY.value, json.dumps(values.to_dict()))
                 for name, values in FACTORY_PRESETS],
            )
        self._logger.info(f"Seeded {len(FACTORY_PRESETS)} factory presets")

    def list(self, category: Optional[PresetCategory] = None) -> list[Preset]:
        """Presets in insertion order, optionally of one category."""
        query = "SELECT id, name, type, preset_values FROM presets"
        params: tuple = ()
        if category is not None:
            query += " WHERE type = ?"
            params = (category.value,)
        rows = self._connection.execute(query + " ORDER BY id;", params).fetchall()
        return [self._row_to_preset(row) for row in rows]

    def get(self, preset_id: int) -> Preset:
        row = self._connection.execute(
            "SELECT id, name, type, preset_values FROM presets WHERE id = ?;", (preset_id,)
        ).fetchone()
        if row is None:
            raise PresetNotFoundError(preset_id)
        return self._row_to_preset(row)

    def put(self, preset: Preset) -> int:
        """Create a preset and return its new id. Any id on the preset is ignored."""
        name = preset.name.strip() if preset.name else ""
        if not name:
            raise PresetError("Preset name must not be empty")
        with self._connection:
            cursor = self._connection.execute(
                "INSERT INTO presets (name, type, preset_values) VALUES (?, ?, ?);",
                (name, preset.category.value, json.dumps(preset.values.to_dict())),
            )
        self._logger.info(f"Saved preset #{cursor.lastrowid}: {name}")
        return cursor.lastrowid

    def delete(self, preset_id: int) -> bool:
        """Delete a custom preset.

        Raises:
            PresetNotFoundError: no preset with that id
            ReadOnlyPresetError: the preset is a factory preset
        """
        preset = self.get(preset_id)
        if preset.read_only:
            raise ReadOnlyPresetError(f"Preset '{preset.name}' is a factory preset")
        with self._connection:
            self._connection.execute("DELETE FROM presets WHERE id = ?;", (preset_id,))
        self._logger.info(f"Deleted preset #{preset_id}: {preset.name}")
        return True

    @staticmethod
    def _row_to_preset(row) -> Preset:
        preset_id, name, category, values = row
        return Preset(
            id=preset_id,
            name=name,
            category=PresetCategory(category),
            values=ControlValues.from_dict(json.loads(values) if values else {}),
        )


class DeviceStore:
    """Paired amplifiers."""

    def __init__(self, connection: sqlite3.Connection):
        self._connection = connection

    def list(self) -> list[DeviceRecord]:
        rows = self._connection.execute(
            "SELECT id, name, ssid, ipAddress, serialNo, modelCode FROM devices ORDER BY rowid;"
        ).fetchall()
        return [DeviceRecord(*row) for row in rows]

    def get(self, device_id: str) -> Optional[DeviceRecord]:
        row = self._connection.execute(
            "SELECT id, name, ssid, ipAddress, serialNo, modelCode FROM devices WHERE id = ?;",
            (device_id,),
        ).fetchone()
        return DeviceRecord(*row) if row else None

    def add(self, device: DeviceRecord):
        """Insert or replace a device record."""
        with self._connection:
            self._connection.execute(
                "INSERT OR REPLACE INTO devices (id, name, ssid, ipAddress, serialNo, modelCode) "
                "VALUES (?, ?, ?, ?, ?, ?);",
                (device.id, device.name, device.ssid, device.ip_address, device.serial_no,
                 device.model_code),
            )

    def rename(self, device_id: str, name: str) -> bool:
        with self._connection:
            cursor = self._connection.execute(
                "UPDATE devices SET name = ? WHERE id = ?;", (name, device_id)
            )
        return cursor.rowcount > 0

    def delete(self, device_id: str) -> bool:
        with self._connection:
            cursor = self._connection.execute("DELETE FROM devices WHERE id = ?;", (device_id,))
        return cursor.rowcount > 0


class SettingsStore:
    """Key/value store for app settings; values are JSON-encoded."""

    def __init__(self, connection: sqlite3.Connection):
        self._connection = connection
        self._logger = logging.getLogger(__name__)

    def get(self, key: str, default: Any = None) -> Any:
        row = self._connection.execute(
            "SELECT value FROM settings WHERE key = ?;", (key,)
        ).fetchone()
        if row is None or row[0] is None:
            return default
        try:
            return json.loads(row[0])
        except json.JSONDecodeError:
            self._logger.warning(f"Ignoring corrupt value stored under {key}")
            return default

    def set(self, key: str, value: Any):
        with self._connection:
            self._connection.execute(
                "INSERT OR REPLACE INTO settings (key, value) VALUES (?, ?);",
                (key, json.dumps(value)),
            )

    def delete(self, key: str):
        with self._connection:
            self._connection.execute("DELETE FROM settings WHERE key = ?;", (key,))

    @property
    def last_settings(self) -> Optional[ControlValues]:
        data = self.get(LAST_SETTINGS_KEY)
        return ControlValues.from_dict(data) if isinstance(data, dict) else None

    @last_settings.setter
    def last_settings(self, values: ControlValues):
        self.set(LAST_SETTINGS_KEY, values.to_dict())

    @property
    def theme(self) -> str:
        return self.get(THEME_KEY, "system")

    @theme.setter
    def theme(self, theme: str):
        self.set(THEME_KEY, theme)

    @property
    def haptics_enabled(self) -> bool:
        return bool(self.get(HAPTICS_KEY, True))

    @haptics_enabled.setter
    def haptics_enabled(self, enabled: bool):
        self.set(HAPTICS_KEY, bool(enabled))

    @property
    def last_connected_device_id(self) -> Optional[str]:
        return self.get(LAST_CONNECTED_ID_KEY)

    @last_connected_device_id.setter
    def last_connected_device_id(self, device_id: str):
        self.set(LAST_CONNECTED_ID_KEY, device_id)


class Database:
    """Owns the SQLite connection and the stores built on it."""

    def __init__(self, path: str = DEFAULT_DATABASE):
        self._logger = logging.getLogger(__name__)
        self._path = path
        self._connection = sqlite3.connect(path)
        self._connection.executescript(_SCHEMA)
        self.presets = PresetStore(self._connection)
        self.devices = DeviceStore(self._connection)
        self.settings = SettingsStore(self._connection)
        self.presets.seed_factory_presets()
        self._logger.debug(f"Database initialized at {path}")

    def close(self):
        self._connection.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
