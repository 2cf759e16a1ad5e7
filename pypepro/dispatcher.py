"""Command dispatcher - a single-flight, coalescing queue of device commands.

The amplifier's embedded web server handles one request at a time and
rapid knob movements generate far more changes than it can absorb. The
dispatcher therefore:
- Keeps at most one queued (unsent) command per command type; a newer
  command replaces the older one instead of queueing behind it
- Sends queued commands in FIFO order, one request in flight at a time
- Bounds every request with a timeout and spaces sends by a short delay
- Never raises network failures to the caller; every outcome is reported
  as a CommandResult through the listener side channel
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

import aiohttp

from pypepro.errors import DeviceNotReadyError
from pypepro.listener import AmplifierListener, multiplexing
from pypepro.models import ControlValues
from pypepro.protocol import (
    Command,
    Control,
    encode,
    is_success,
)

DEFAULT_REQUEST_TIMEOUT = 5.0
DEFAULT_INTER_COMMAND_DELAY = 0.05
DEFAULT_HISTORY_SIZE = 100


class DispatcherState(Enum):
    IDLE = "idle"
    SENDING = "sending"


class CommandOutcome(Enum):
    SUCCESS = "success"
    DEVICE_ERROR = "device_error"        # non-2xx or no success marker
    TRANSPORT_ERROR = "transport_error"  # timeout, connection or DNS failure


@dataclass(frozen=True)
class CommandResult:
    command: Command
    url: str
    outcome: CommandOutcome
    status: Optional[int] = None
    body: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 1
    sequence_number: int = 0

    @property
    def ok(self) -> bool:
        return self.outcome is CommandOutcome.SUCCESS


def normalize_host(host: str) -> str:
    """Turn '192.168.1.20', '192.168.1.20:8080' or 'http://x/' into a base URL without trailing slash."""
    host = host.strip()
    if not host:
        raise ValueError("Device host must not be empty")
    if "://" not in host:
        host = f"http://{host}"
    return host.rstrip("/")


# Fields of a snapshot in the order they are applied, paired with their control
_APPLY_ORDER = (
    (Control.MASTER_VOLUME, "volume"),
    (Control.BASS, "bass"),
    (Control.MID, "mid"),
    (Control.TREBLE, "treble"),
    (Control.FRONT_LEFT, "front_left"),
    (Control.FRONT_RIGHT, "front_right"),
    (Control.CENTER, "center"),
    (Control.REAR_LEFT, "rear_left"),
    (Control.REAR_RIGHT, "rear_right"),
    (Control.TONE, "tone"),
    (Control.SURROUND, "surround"),
    (Control.INPUT_MODE, "mode"),
)


class CommandDispatcher:
    """Serializes commands to one amplifier over HTTP.

    Instances are independent; each owns its queue, state and device host.
    """

    def __init__(self, host: Optional[str] = None, listener: Optional[AmplifierListener] = None,
                 session: Optional[aiohttp.ClientSession] = None,
                 request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
                 inter_command_delay: float = DEFAULT_INTER_COMMAND_DELAY,
                 max_retries: int = 0, history_size: int = DEFAULT_HISTORY_SIZE):
        """Initialize dispatcher.

        Args:
            host: Device base URL or address; may be set later with set_host()
            listener: Receives command results (more can be added with register_listener)
            session: aiohttp session to use; one is created (and owned) if omitted
            request_timeout: Seconds before an unanswered request is abandoned
            inter_command_delay: Minimum seconds between one completion and the next send
            max_retries: Immediate resend attempts after a transport error (0 = drop)
            history_size: Number of recent results kept in `results`
        """
        self._logger = logging.getLogger(__name__)
        self._host: Optional[str] = normalize_host(host) if host else None
        self._callback = multiplexing(listener)
        self._session = session
        self._owns_session = session is None
        self._request_timeout = request_timeout
        self._inter_command_delay = inter_command_delay
        self._max_retries = max_retries

        # Queued (not in flight) commands: (sequence_number, command)
        self._queue: deque[tuple[int, Command]] = deque()
        self._command_sequence_number: int = 0
        self._state = DispatcherState.IDLE
        self._in_flight: Optional[Command] = None
        self._command_worker_task: Optional[asyncio.Task[Any]] = None
        # Track last completion time to space out requests to the device
        self._last_completion_timestamp: float = 0.0
        self.results: deque[CommandResult] = deque(maxlen=history_size)

    # ========== Properties ==========

    @property
    def host(self) -> Optional[str]:
        return self._host

    @property
    def state(self) -> DispatcherState:
        return self._state

    @property
    def in_flight(self) -> Optional[Command]:
        """Command currently being transmitted, if any."""
        return self._in_flight

    @property
    def pending(self) -> tuple[Command, ...]:
        """Queued commands in send order, excluding the one in flight."""
        return tuple(command for _, command in self._queue)

    def set_host(self, host: str):
        """Set the device base URL. Takes effect for every command not yet sent."""
        host = normalize_host(host)
        if host != self._host:
            self._host = host
            self._logger.info(f"Device host set to {host}")
            self._callback.host_changed(host)

    def register_listener(self, listener: AmplifierListener):
        self._callback.register_listener(listener)

    def unregister_listener(self, listener: AmplifierListener):
        self._callback.unregister_listener(listener)

    # ========== Queue management ==========

    def enqueue(self, command: Command):
        """Queue a command, replacing any unsent command of the same type.

        Raises:
            DeviceNotReadyError: no device host has been configured
        """
        if self._host is None:
            raise DeviceNotReadyError(f"No device host configured, cannot send {command}")

        superseded = [seq for seq, queued in self._queue if queued.command_type is command.command_type]
        if superseded:
            self._queue = deque(
                (seq, queued) for seq, queued in self._queue
                if queued.command_type is not command.command_type
            )
            self._logger.debug(f"QUEUE: {command} supersedes command(s) {superseded}")

        self._command_sequence_number += 1
        self._queue.append((self._command_sequence_number, command))
        self._logger.info(
            f"QUEUE: Added command #{self._command_sequence_number}: {command} (queue size={len(self._queue)})"
        )

        if self._command_worker_task is None or self._command_worker_task.done():
            self._command_worker_task = asyncio.get_running_loop().create_task(self._command_worker())

    def send(self, control: Control, value=None) -> Optional[Command]:
        """Encode a control change and queue it. Returns None when nothing was queued."""
        command = encode(control, value)
        if command is None:
            self._logger.debug(f"No command for {control.value}={value!r}")
            return None
        self.enqueue(command)
        return command

    def apply_all_parameters(self, values: ControlValues):
        """Queue one command per control field of a snapshot.

        Input mode is skipped when the snapshot's mode name is not known.
        Applying twice before the queue drains leaves only the second
        snapshot's values queued.
        """
        self._logger.info("QUEUE: Queuing all parameters")
        for control, attribute in _APPLY_ORDER:
            self.send(control, getattr(values, attribute))

    def clear(self) -> int:
        """Drop all queued commands (not the one in flight). Returns how many were dropped."""
        dropped = len(self._queue)
        self._queue.clear()
        if dropped:
            self._logger.info(f"QUEUE: Cleared {dropped} queued command(s)")
        return dropped

    async def join(self):
        """Wait until the queue is empty and nothing is in flight."""
        while self._command_worker_task is not None and not self._command_worker_task.done():
            await asyncio.wait({self._command_worker_task})

    async def close(self):
        """Stop sending and release the HTTP session if it was created here."""
        self._queue.clear()
        if self._command_worker_task is not None and not self._command_worker_task.done():
            self._command_worker_task.cancel()
            await asyncio.wait({self._command_worker_task})
        self._command_worker_task = None
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    # ========== Sending ==========

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession()
        return self._session

    async def _get(self, url: str) -> tuple[int, str]:
        async with self._get_session().get(url) as response:
            body = await response.text()
            return response.status, body

    async def request(self, path: str, host: Optional[str] = None,
                      timeout: Optional[float] = None) -> tuple[int, str]:
        """One-off GET outside the queue, e.g. for the connection handshake.

        Unlike queued commands, failures are raised (asyncio.TimeoutError,
        aiohttp.ClientError).
        """
        base = normalize_host(host) if host else self._host
        if base is None:
            raise DeviceNotReadyError(f"No device host configured, cannot request {path}")
        url = f"{base}{path}"
        self._logger.debug(f"SEND: {url}")
        if timeout is None:
            timeout = self._request_timeout
        return await asyncio.wait_for(self._get(url), timeout)

    async def _command_worker(self):
        """Drain the queue one command at a time. Exits when the queue is empty."""
        while self._queue:
            try:
                # Space out requests so the device's web server is not flooded
                time_since_last_completion = time.time() - self._last_completion_timestamp
                if time_since_last_completion < self._inter_command_delay:
                    await asyncio.sleep(self._inter_command_delay - time_since_last_completion)
                if not self._queue:
                    break

                sequence_number, command = self._queue.popleft()
                result = await self._send(sequence_number, command)
                self.results.append(result)
                self._callback.command_completed(result)
            except asyncio.CancelledError:
                self._logger.debug("Command worker cancelled")
                break
            except Exception as e:
                self._logger.error(f"Unexpected error in command worker loop: {e}", exc_info=True)

    async def _send(self, sequence_number: int, command: Command) -> CommandResult:
        self._state = DispatcherState.SENDING
        self._in_flight = command
        try:
            attempts = 0
            while True:
                attempts += 1
                result = await self._send_once(sequence_number, command, attempts)
                if result.outcome is not CommandOutcome.TRANSPORT_ERROR or attempts > self._max_retries:
                    return result
                if any(queued.command_type is command.command_type for _, queued in self._queue):
                    self._logger.info(f"Not retrying command #{sequence_number}, a newer {command.command_type.value} is queued")
                    return result
                self._logger.warning(
                    f"Retrying command #{sequence_number} (attempt {attempts + 1}/{self._max_retries + 1}): {command}"
                )
        finally:
            self._in_flight = None
            self._state = DispatcherState.IDLE
            self._last_completion_timestamp = time.time()

    async def _send_once(self, sequence_number: int, command: Command, attempts: int) -> CommandResult:
        # Host is read at send time so a host change applies to everything not yet sent
        url = command.url(self._host)
        self._logger.info(f"SEND: Command #{sequence_number}: {url}")
        try:
            status, body = await asyncio.wait_for(self._get(url), self._request_timeout)
        except asyncio.TimeoutError:
            self._logger.error(f"Request timed out for command #{sequence_number}: {command}")
            return CommandResult(command, url, CommandOutcome.TRANSPORT_ERROR,
                                 error=f"timed out after {self._request_timeout}s",
                                 attempts=attempts, sequence_number=sequence_number)
        except (aiohttp.ClientError, OSError) as e:
            self._logger.error(f"Error sending command #{sequence_number} ({command}): {e}")
            return CommandResult(command, url, CommandOutcome.TRANSPORT_ERROR, error=str(e),
                                 attempts=attempts, sequence_number=sequence_number)

        if not 200 <= status < 300:
            self._logger.error(f"HTTP error for command #{sequence_number} ({command}): status {status}")
            return CommandResult(command, url, CommandOutcome.DEVICE_ERROR, status=status, body=body,
                                 error=f"HTTP status {status}", attempts=attempts,
                                 sequence_number=sequence_number)
        if not is_success(body):
            self._logger.warning(f"Sent {command}, but got unexpected response: {body!r}")
            return CommandResult(command, url, CommandOutcome.DEVICE_ERROR, status=status, body=body,
                                 error="missing success marker", attempts=attempts,
                                 sequence_number=sequence_number)

        self._logger.info(f"RECV: Success for command #{sequence_number}: {command}, response: {body.strip()}")
        return CommandResult(command, url, CommandOutcome.SUCCESS, status=status, body=body,
                             attempts=attempts, sequence_number=sequence_number)
