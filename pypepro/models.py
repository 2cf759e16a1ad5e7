"""Value objects shared by the dispatcher, the facade and the stores."""

from dataclasses import asdict, dataclass, field, fields, replace
from enum import Enum
from typing import Any, Optional


class PresetCategory(Enum):
    """Factory presets ship with the app and are read-only; custom ones are user created."""
    FACTORY = "gtzan"
    CUSTOM = "custom"


# Stored keys use the camelCase names of the companion app
_STORED_KEYS = {
    "front_left": "frontLeft",
    "front_right": "frontRight",
    "rear_left": "rearLeft",
    "rear_right": "rearRight",
}


@dataclass(frozen=True)
class ControlValues:
    """A full snapshot of the amplifier's control values."""
    volume: int = 50
    bass: int = 50
    mid: int = 50
    treble: int = 50
    prologic: bool = False
    tone: bool = False
    surround: bool = False
    mixed: bool = False
    front_left: int = 50
    front_right: int = 50
    subwoofer: int = 50
    center: int = 50
    rear_left: int = 50
    rear_right: int = 50
    mode: str = "AUX1"

    def to_dict(self) -> dict[str, Any]:
        return {_STORED_KEYS.get(k, k): v for k, v in asdict(self).items()}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ControlValues":
        """Build from a stored dict. Unknown keys are ignored, missing ones take defaults."""
        stored_to_attr = {v: k for k, v in _STORED_KEYS.items()}
        known = {f.name for f in fields(cls)}
        values = {}
        for key, value in data.items():
            attr = stored_to_attr.get(key, key)
            if attr in known:
                values[attr] = value
        return cls(**values)

    def with_changes(self, **changes) -> "ControlValues":
        return replace(self, **changes)


@dataclass
class Preset:
    """A named snapshot. The id is assigned by the store on creation."""
    name: str
    category: PresetCategory = PresetCategory.CUSTOM
    values: ControlValues = field(default_factory=ControlValues)
    id: Optional[int] = None

    @property
    def read_only(self) -> bool:
        return self.category is PresetCategory.FACTORY


@dataclass
class DeviceRecord:
    """A paired amplifier."""
    id: str
    name: str
    ssid: str = ""
    ip_address: Optional[str] = None
    serial_no: Optional[str] = None
    model_code: Optional[str] = None
