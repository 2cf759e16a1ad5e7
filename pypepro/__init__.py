"""pypepro Python Package

Python library for controlling the PE PRO Digital 5.1 Amplifier.
"""

from pypepro.amplifier import ConnectionStatus, PEProAmplifier
from pypepro.discovery import DeviceScanner, DiscoveredCandidate, ScanOutcome
from pypepro.dispatcher import CommandDispatcher, CommandOutcome, CommandResult
from pypepro.models import ControlValues, Preset, PresetCategory
from pypepro.protocol import Control, encode

__all__ = [
    "CommandDispatcher",
    "CommandOutcome",
    "CommandResult",
    "ConnectionStatus",
    "Control",
    "ControlValues",
    "DeviceScanner",
    "DiscoveredCandidate",
    "PEProAmplifier",
    "Preset",
    "PresetCategory",
    "ScanOutcome",
    "encode",
]
