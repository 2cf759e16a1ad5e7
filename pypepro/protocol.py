import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

logger = logging.getLogger(__name__)

# The amplifier runs a small embedded web server. Every control change is a
# plain GET against a fixed-format path, e.g. GET http://192.168.4.1/mav/60/
# The trailing slash is significant.

# Success marker in the body of a command response: "OK"
SUCCESS_MARKER = "OK"

# Presence response from /isthere/: YES/PEPRO51/
PRESENCE_RESPONSE = re.compile(r"^YES/([^/]*)/?")

# Serial response from /getSerial/: serial/PEPRO51/A1B2C3D4/
SERIAL_RESPONSE = re.compile(r"^serial/([^/]+)/([^/]+)/?")

PRESENCE_PATH = "/isthere/"
SERIAL_PATH = "/getSerial/"

# This order MUST match the input selector on the device; the index is what
# goes on the wire.
INPUT_MODES = ("AUX1", "AUX2", "AUX3", "USB/BT", "5.1 Analogue")


class Control(Enum):
    """Semantic controls exposed by the amplifier."""
    MASTER_VOLUME = "masterVolume"
    BASS = "bass"
    MID = "mid"
    TREBLE = "treble"
    FRONT_LEFT = "frontLeft"
    FRONT_RIGHT = "frontRight"
    CENTER = "center"
    REAR_LEFT = "rearLeft"
    REAR_RIGHT = "rearRight"
    TONE = "tone"
    SURROUND = "surround"
    INPUT_MODE = "inputMode"
    MUTE = "mute"
    IR_CODE = "irCode"


class CommandType(Enum):
    """Wire prefix of a command. Queued commands coalesce on this tag."""
    MASTER_VOLUME = "mav"
    BASS = "bsv"
    MID = "mdv"
    TREBLE = "trv"
    FRONT_LEFT = "flv"
    FRONT_RIGHT = "frv"
    CENTER = "cnv"
    REAR_LEFT = "rlv"
    REAR_RIGHT = "rrv"
    TONE = "ton"
    SURROUND = "sue"
    INPUT_MODE = "inp"
    MUTE = "mut"
    IR_CODE = "irs"


_COMMAND_TYPES = {control: CommandType[control.name] for control in Control}

# Per-channel attenuation controls in the order they are applied
CHANNEL_CONTROLS = (
    Control.FRONT_LEFT,
    Control.FRONT_RIGHT,
    Control.CENTER,
    Control.REAR_LEFT,
    Control.REAR_RIGHT,
)

_LEVEL_CONTROLS = (
    Control.MASTER_VOLUME,
    Control.BASS,
    Control.MID,
    Control.TREBLE,
) + CHANNEL_CONTROLS

_FLAG_CONTROLS = (Control.TONE, Control.SURROUND)


@dataclass(frozen=True)
class Command:
    """A single device instruction, tagged with its command type."""
    command_type: CommandType
    path: str

    def url(self, host: str) -> str:
        return f"{host}{self.path}"

    def __str__(self):
        return self.path


def command_type_for(control: Control) -> CommandType:
    """Command type used to coalesce queued commands for a control."""
    return _COMMAND_TYPES[control]


def mode_index(name: str) -> Optional[int]:
    """Position of an input mode name in INPUT_MODES, or None when unknown."""
    try:
        return INPUT_MODES.index(name)
    except ValueError:
        return None


def mode_name(index: int) -> Optional[str]:
    if 0 <= index < len(INPUT_MODES):
        return INPUT_MODES[index]
    return None


def is_success(body: Optional[str]) -> bool:
    return body is not None and SUCCESS_MARKER in body


def parse_presence(body: str) -> Optional[str]:
    """Model code from a /isthere/ answer, or None if the answer is not a YES."""
    match = PRESENCE_RESPONSE.match(body.strip())
    if match:
        return match.group(1)
    return None


def parse_serial(body: str) -> Optional[tuple[str, str]]:
    """(model_code, serial_code) from a /getSerial/ answer."""
    match = SERIAL_RESPONSE.match(body.strip())
    if match:
        return match.group(1), match.group(2)
    return None


class AmplifierProtocol:
    """Builders for the amplifier's command paths."""

    @staticmethod
    def _level(command_type: CommandType, level: int) -> Command:
        return Command(command_type, f"/{command_type.value}/{int(level)}/")

    @staticmethod
    def _flag(command_type: CommandType, enabled: bool) -> Command:
        return Command(command_type, f"/{command_type.value}/{1 if enabled else 0}/")

    @staticmethod
    def command_set_master_volume(volume: int) -> Command:
        return AmplifierProtocol._level(CommandType.MASTER_VOLUME, volume)

    @staticmethod
    def command_set_bass(level: int) -> Command:
        return AmplifierProtocol._level(CommandType.BASS, level)

    @staticmethod
    def command_set_mid(level: int) -> Command:
        return AmplifierProtocol._level(CommandType.MID, level)

    @staticmethod
    def command_set_treble(level: int) -> Command:
        return AmplifierProtocol._level(CommandType.TREBLE, level)

    @staticmethod
    def command_set_channel_level(channel: Control, level: int) -> Command:
        """Attenuation for one of the per-channel controls (frontLeft ... rearRight)."""
        if channel not in CHANNEL_CONTROLS:
            raise ValueError(f"{channel} is not a channel control")
        return AmplifierProtocol._level(command_type_for(channel), level)

    @staticmethod
    def command_set_tone(enabled: bool) -> Command:
        return AmplifierProtocol._flag(CommandType.TONE, enabled)

    @staticmethod
    def command_set_surround(enabled: bool) -> Command:
        return AmplifierProtocol._flag(CommandType.SURROUND, enabled)

    @staticmethod
    def command_set_input_mode(mode) -> Optional[Command]:
        """Input mode by name (looked up in INPUT_MODES) or by index.

        Returns None for an unknown name; nothing should be sent in that case.
        """
        if isinstance(mode, str):
            index = mode_index(mode)
            if index is None:
                logger.debug(f"Unknown input mode {mode!r}, no command emitted")
                return None
        else:
            index = int(mode)
        return Command(CommandType.INPUT_MODE, f"/{CommandType.INPUT_MODE.value}/{index}/")

    @staticmethod
    def command_mute() -> Command:
        return Command(CommandType.MUTE, f"/{CommandType.MUTE.value}/")

    @staticmethod
    def command_send_ir(code: str) -> Command:
        return Command(CommandType.IR_CODE, f"/{CommandType.IR_CODE.value}/{code}/")


def encode(control: Control, value=None) -> Optional[Command]:
    """Map a control change to its wire command.

    Levels are integers, tone/surround are booleans, input mode is a mode
    name (or index). Mute takes no value. Returns None only for an input
    mode name that is not in INPUT_MODES.
    """
    if control in _LEVEL_CONTROLS:
        return AmplifierProtocol._level(command_type_for(control), value)
    if control in _FLAG_CONTROLS:
        return AmplifierProtocol._flag(command_type_for(control), bool(value))
    if control is Control.INPUT_MODE:
        return AmplifierProtocol.command_set_input_mode(value)
    if control is Control.MUTE:
        return AmplifierProtocol.command_mute()
    if control is Control.IR_CODE:
        return AmplifierProtocol.command_send_ir(value)
    raise ValueError(f"Unsupported control {control}")
