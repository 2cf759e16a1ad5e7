"""PE PRO amplifier - high level control facade.

This module ties together:
- The command dispatcher (single-flight, coalescing HTTP command queue)
- The SSDP scanner used to find the amplifier on a home network
- Optional local persistence of presets, paired devices and last settings
- Optimistic tracking of the control values last sent to the device
- The presence/serial handshake used to connect and pair
"""

import asyncio
import logging
from enum import Enum
from typing import Optional

import aiohttp

from pypepro.discovery import DeviceScanner, DiscoveredCandidate
from pypepro.dispatcher import CommandDispatcher, normalize_host
from pypepro.errors import ConnectionFailedError
from pypepro.listener import AmplifierListener, MultiplexingListener
from pypepro.models import ControlValues, DeviceRecord, Preset, PresetCategory
from pypepro.protocol import (
    CHANNEL_CONTROLS,
    INPUT_MODES,
    PRESENCE_PATH,
    SERIAL_PATH,
    AmplifierProtocol,
    Control,
    parse_presence,
    parse_serial,
)
from pypepro.storage import Database

# Address of the amplifier on its own WiFi hotspot (direct/AP mode)
DEFAULT_AP_HOST = "http://192.168.4.1"
DEFAULT_HANDSHAKE_TIMEOUT = 3.0

VOLUME_RANGE = (0, 100)
LEVEL_RANGE = (0, 100)

_CHANNEL_ATTRIBUTES = {
    Control.FRONT_LEFT: "front_left",
    Control.FRONT_RIGHT: "front_right",
    Control.CENTER: "center",
    Control.REAR_LEFT: "rear_left",
    Control.REAR_RIGHT: "rear_right",
}


class ConnectionStatus(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class PEProAmplifier:
    """High-level PE PRO amplifier control.

    Setters validate their argument, update the optimistic `settings`
    snapshot and queue the command; they return immediately. Outcomes of
    sent commands arrive through registered listeners.
    """

    def __init__(self, host: Optional[str] = None, database: Optional[Database] = None,
                 session: Optional[aiohttp.ClientSession] = None,
                 request_timeout: float = 5.0, inter_command_delay: float = 0.05,
                 max_retries: int = 0, scan_window: float = 5.0,
                 handshake_timeout: float = DEFAULT_HANDSHAKE_TIMEOUT,
                 scanner: Optional[DeviceScanner] = None):
        """Initialize amplifier.

        Args:
            host: Device base URL or address, if already known
            database: Local store for presets, devices and settings
            session: aiohttp session shared by dispatcher and scanner
            request_timeout: Per-command timeout in seconds
            inter_command_delay: Seconds between commands
            max_retries: Resends after a transport error
            scan_window: Seconds each discovery scan listens for answers
            handshake_timeout: Timeout of the /isthere/ and /getSerial/ requests
            scanner: Scanner to use instead of a default DeviceScanner
        """
        self._logger = logging.getLogger(__name__)
        self._database = database
        self._handshake_timeout = handshake_timeout

        self._multiplex_callback = MultiplexingListener()
        self.dispatcher = CommandDispatcher(
            host=host,
            listener=self._multiplex_callback,
            session=session,
            request_timeout=request_timeout,
            inter_command_delay=inter_command_delay,
            max_retries=max_retries,
        )
        self.scanner = scanner if scanner is not None else DeviceScanner(
            listener=self._multiplex_callback, scan_window=scan_window, session=session
        )

        self._status = ConnectionStatus.DISCONNECTED
        self._device: Optional[DeviceRecord] = None

        last = database.settings.last_settings if database else None
        self._settings: ControlValues = last if last is not None else ControlValues()

    # ========== Properties ==========

    @property
    def settings(self) -> ControlValues:
        """Control values last requested (not confirmed by the device)."""
        return self._settings

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def device(self) -> Optional[DeviceRecord]:
        """The device the last successful connect() paired with."""
        return self._device

    @property
    def host(self) -> Optional[str]:
        return self.dispatcher.host

    def register_listener(self, listener: AmplifierListener):
        self._multiplex_callback.register_listener(listener)

    def unregister_listener(self, listener: AmplifierListener):
        self._multiplex_callback.unregister_listener(listener)

    # ========== Connection ==========

    def _set_status(self, status: ConnectionStatus):
        if status is not self._status:
            self._status = status
            self._multiplex_callback.connection_status_changed(status)

    async def connect(self, host: str = DEFAULT_AP_HOST, name: Optional[str] = None) -> DeviceRecord:
        """Check the device answers at host and make it the active device.

        The device must answer /isthere/ with YES/<model>/ and /getSerial/
        with serial/<model>/<serial>/. The serial code identifies the device.

        Raises:
            ConnectionFailedError: the device did not answer as expected
        """
        host = normalize_host(host)
        self._set_status(ConnectionStatus.CONNECTING)
        self._logger.info(f"Connecting to {host}")
        try:
            _, presence = await self.dispatcher.request(PRESENCE_PATH, host=host,
                                                        timeout=self._handshake_timeout)
            if parse_presence(presence) is None:
                raise ConnectionFailedError(f"Device did not respond correctly: {presence!r}")
            _, serial = await self.dispatcher.request(SERIAL_PATH, host=host,
                                                      timeout=self._handshake_timeout)
            parsed = parse_serial(serial)
            if parsed is None:
                raise ConnectionFailedError(f"Unexpected serial response: {serial!r}")
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            self._logger.error(f"Connection to {host} failed: {e}")
            self._set_status(ConnectionStatus.ERROR)
            raise ConnectionFailedError(f"Could not connect to {host}: {e}") from e
        except ConnectionFailedError as e:
            self._logger.error(f"Connection to {host} failed: {e}")
            self._set_status(ConnectionStatus.ERROR)
            raise

        model_code, serial_code = parsed
        self.dispatcher.set_host(host)
        self._device = self._remember_device(serial_code, model_code, host, name)
        self._set_status(ConnectionStatus.CONNECTED)
        self._logger.info(f"Connected to {self._device.name} ({model_code}, serial {serial_code})")
        return self._device

    async def connect_candidate(self, candidate: DiscoveredCandidate) -> DeviceRecord:
        """Connect to a device found by the scanner."""
        return await self.connect(candidate.address, name=candidate.name)

    def disconnect(self):
        """Forget the active device status. Queued commands stay queued."""
        self._device = None
        self._set_status(ConnectionStatus.DISCONNECTED)

    def _remember_device(self, serial_code: str, model_code: str, host: str,
                         name: Optional[str]) -> DeviceRecord:
        address = host.split("://", 1)[-1]
        existing = self._database.devices.get(serial_code) if self._database else None
        if existing is not None:
            device = DeviceRecord(existing.id, existing.name, existing.ssid, address,
                                  serial_code, model_code)
        else:
            device = DeviceRecord(serial_code, name or f"PE PRO {model_code}", "", address,
                                  serial_code, model_code)
        if self._database:
            self._database.devices.add(device)
            self._database.settings.last_connected_device_id = device.id
        return device

    # ========== Scanning ==========

    async def scan(self) -> list[DiscoveredCandidate]:
        """Scan the local network for amplifiers."""
        return await self.scanner.scan()

    # ========== Controls ==========

    def _in_range(self, what: str, value, bounds: tuple[int, int]) -> bool:
        low, high = bounds
        if isinstance(value, bool) or not isinstance(value, int):
            self._logger.error(f"Invalid {what} type {type(value)}, must be int")
            return False
        if not (low <= value <= high):
            self._logger.error(f"Invalid {what} {value}, must be {low}-{high}")
            return False
        return True

    def _update(self, **changes):
        self._settings = self._settings.with_changes(**changes)

    def set_master_volume(self, volume: int):
        if not self._in_range("volume", volume, VOLUME_RANGE):
            return
        self._logger.info(f"Volume request - {volume}")
        self.dispatcher.enqueue(AmplifierProtocol.command_set_master_volume(volume))
        self._update(volume=volume)

    def set_bass(self, level: int):
        if not self._in_range("bass level", level, LEVEL_RANGE):
            return
        self.dispatcher.enqueue(AmplifierProtocol.command_set_bass(level))
        self._update(bass=level)

    def set_mid(self, level: int):
        if not self._in_range("mid level", level, LEVEL_RANGE):
            return
        self.dispatcher.enqueue(AmplifierProtocol.command_set_mid(level))
        self._update(mid=level)

    def set_treble(self, level: int):
        if not self._in_range("treble level", level, LEVEL_RANGE):
            return
        self.dispatcher.enqueue(AmplifierProtocol.command_set_treble(level))
        self._update(treble=level)

    def set_channel_level(self, channel: Control, level: int):
        """Attenuation of one output channel (frontLeft, frontRight, center, rearLeft, rearRight)."""
        if channel not in CHANNEL_CONTROLS:
            self._logger.error(f"Invalid channel {channel}")
            return
        if not self._in_range(f"{channel.value} level", level, LEVEL_RANGE):
            return
        self.dispatcher.enqueue(AmplifierProtocol.command_set_channel_level(channel, level))
        self._update(**{_CHANNEL_ATTRIBUTES[channel]: level})

    def set_tone(self, enabled: bool):
        self.dispatcher.enqueue(AmplifierProtocol.command_set_tone(enabled))
        self._update(tone=bool(enabled))

    def set_surround(self, enabled: bool):
        self.dispatcher.enqueue(AmplifierProtocol.command_set_surround(enabled))
        self._update(surround=bool(enabled))

    def set_input_mode(self, mode: str):
        """Select an input by name (one of INPUT_MODES)."""
        command = AmplifierProtocol.command_set_input_mode(mode)
        if command is None:
            self._logger.error(f"Invalid input mode {mode!r}, must be one of {', '.join(INPUT_MODES)}")
            return
        self.dispatcher.enqueue(command)
        self._update(mode=mode)

    def mute(self):
        """Toggle mute on the device."""
        self.dispatcher.enqueue(AmplifierProtocol.command_mute())

    def send_ir(self, code: str):
        """Pass a raw IR remote code through to the device."""
        if not code:
            self._logger.error("Empty IR code")
            return
        self.dispatcher.enqueue(AmplifierProtocol.command_send_ir(code))

    def apply_settings(self, values: ControlValues):
        """Send every control of a snapshot and remember it as the last settings."""
        self.dispatcher.apply_all_parameters(values)
        self._settings = values
        if self._database:
            self._database.settings.last_settings = values

    def save_last_settings(self):
        if self._database:
            self._database.settings.last_settings = self._settings

    # ========== Presets ==========

    def _require_database(self) -> Database:
        if self._database is None:
            raise RuntimeError("No database configured for presets")
        return self._database

    def presets(self, category: Optional[PresetCategory] = None) -> list[Preset]:
        return self._require_database().presets.list(category)

    def save_preset(self, name: str) -> int:
        """Store the current settings as a new custom preset."""
        preset = Preset(name=name, category=PresetCategory.CUSTOM, values=self._settings)
        return self._require_database().presets.put(preset)

    def apply_preset(self, preset_id: int) -> Preset:
        preset = self._require_database().presets.get(preset_id)
        self._logger.info(f"Applying preset '{preset.name}'")
        self.apply_settings(preset.values)
        return preset

    def delete_preset(self, preset_id: int) -> bool:
        return self._require_database().presets.delete(preset_id)

    async def close(self):
        self.save_last_settings()
        await self.scanner.close()
        await self.dispatcher.close()
