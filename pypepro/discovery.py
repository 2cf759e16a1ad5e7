"""SSDP discovery of amplifiers on the local network.

A scan multicasts an M-SEARCH (ssdp:all) from the phone/host's LAN address
and listens for unicast answers for a bounded window. Answers whose SERVER
header carries the device family marker become candidates; the LOCATION
URL's host is the candidate's address.
"""

import asyncio
import ipaddress
import logging
import socket
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional
from urllib.parse import urlsplit
from xml.parsers.expat import ExpatError

import aiohttp
import xmltodict

from pypepro.errors import NotOnLocalNetworkError
from pypepro.listener import AmplifierListener, multiplexing

SSDP_ADDRESS = "239.255.255.250"
SSDP_PORT = 1900
SEARCH_TARGET = "ssdp:all"

# The firmware advertises SERVER: PE PRO Digital 5.1 Amplifier/1.0 ...
DEVICE_MARKER = "PE PRO"

DEFAULT_SCAN_WINDOW = 5.0
DEFAULT_DESCRIPTION_TIMEOUT = 3.0

logger = logging.getLogger(__name__)


class ScannerState(Enum):
    IDLE = "idle"
    SCANNING = "scanning"


class ScanOutcome(Enum):
    FOUND = "found"
    NONE_FOUND = "none_found"


@dataclass(frozen=True)
class DiscoveredCandidate:
    """A device found during a scan. The id is its network address."""
    id: str
    name: str
    address: str
    location: str = ""


@dataclass(frozen=True)
class DeviceDescription:
    """Fields of the UPnP device description served at a candidate's LOCATION."""
    friendly_name: Optional[str] = None
    model_name: Optional[str] = None
    manufacturer: Optional[str] = None
    serial_number: Optional[str] = None
    udn: Optional[str] = None


def build_search_request(search_target: str = SEARCH_TARGET, mx: int = 2) -> bytes:
    return "\r\n".join([
        "M-SEARCH * HTTP/1.1",
        f"HOST: {SSDP_ADDRESS}:{SSDP_PORT}",
        'MAN: "ssdp:discover"',
        f"MX: {mx}",
        f"ST: {search_target}",
        "",
        "",
    ]).encode("ascii")


def parse_ssdp_headers(data: bytes) -> Optional[dict[str, str]]:
    """Parse an SSDP answer or NOTIFY into upper-cased header names -> values.

    Returns None if the datagram does not look like an SSDP message.
    """
    lines = data.decode("utf-8", errors="replace").splitlines()
    if not lines:
        return None
    start_line = lines[0].strip().upper()
    if not (start_line.startswith("HTTP/") or start_line.startswith("NOTIFY")):
        return None
    headers = {}
    for line in lines[1:]:
        name, sep, value = line.partition(":")
        if sep and name.strip():
            headers[name.strip().upper()] = value.strip()
    return headers


def parse_candidate(headers: dict[str, str], marker: str = DEVICE_MARKER) -> Optional[DiscoveredCandidate]:
    """Candidate from parsed headers, or None if the responder is not one of ours.

    Raises:
        ValueError: the responder is ours but its LOCATION cannot be parsed
    """
    server = headers.get("SERVER", "")
    if marker not in server:
        return None
    location = headers.get("LOCATION", "")
    hostname = urlsplit(location).hostname
    if not hostname:
        raise ValueError(f"cannot extract a host from LOCATION {location!r}")
    name = server.split("/")[0].strip() or hostname
    return DiscoveredCandidate(id=hostname, name=name, address=hostname, location=location)


def resolve_local_address() -> Optional[str]:
    """IPv4 address of the interface that routes to the SSDP multicast group."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            # connect() on a UDP socket sends nothing, it only selects a route
            sock.connect((SSDP_ADDRESS, SSDP_PORT))
            return sock.getsockname()[0]
    except OSError as e:
        logger.debug(f"Could not resolve local address: {e}")
        return None


def is_local_network_address(address: Optional[str]) -> bool:
    """True for a private, non-loopback, non-link-local IPv4 address (i.e. a LAN/WiFi address)."""
    if not address:
        return False
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        return False
    return ip.version == 4 and ip.is_private and not ip.is_loopback and not ip.is_link_local \
        and not ip.is_unspecified


class _SsdpProtocol(asyncio.DatagramProtocol):
    """Forwards datagrams of one scan to the scanner, tagged with the scan generation."""

    def __init__(self, scanner: "DeviceScanner", generation: int):
        self._scanner = scanner
        self._generation = generation

    def datagram_received(self, data, addr):
        self._scanner._advertisement_received(data, addr, self._generation)

    def error_received(self, exc):
        logger.warning(f"SCAN: socket error: {exc}")


class DeviceScanner:
    """Finds amplifiers on the local network, one bounded scan window at a time."""

    def __init__(self, listener: Optional[AmplifierListener] = None,
                 scan_window: float = DEFAULT_SCAN_WINDOW,
                 device_marker: str = DEVICE_MARKER,
                 search_target: str = SEARCH_TARGET,
                 local_address_resolver: Callable[[], Optional[str]] = resolve_local_address,
                 session: Optional[aiohttp.ClientSession] = None):
        """Initialize scanner.

        Args:
            listener: Receives scan events (more can be added with register_listener)
            scan_window: Seconds to listen for answers per scan
            device_marker: Substring of the SERVER header identifying our devices
            search_target: SSDP ST header of the search
            local_address_resolver: Returns the local IPv4 address or None
            session: aiohttp session used by describe()
        """
        self._logger = logging.getLogger(__name__)
        self._callback = multiplexing(listener)
        self._scan_window = scan_window
        self._device_marker = device_marker
        self._search_target = search_target
        self._local_address_resolver = local_address_resolver
        self._session = session
        self._owns_session = session is None

        self._state = ScannerState.IDLE
        self._candidates: list[DiscoveredCandidate] = []
        self._last_outcome: Optional[ScanOutcome] = None
        # Incremented per scan; answers and timers of an older scan are ignored
        self._generation: int = 0
        self._transport: Optional[asyncio.DatagramTransport] = None
        self._window_timer: Optional[asyncio.TimerHandle] = None
        self._scan_finished_event = asyncio.Event()

    @property
    def state(self) -> ScannerState:
        return self._state

    @property
    def candidates(self) -> list[DiscoveredCandidate]:
        """Candidates of the current (or last) scan in discovery order."""
        return list(self._candidates)

    @property
    def last_outcome(self) -> Optional[ScanOutcome]:
        return self._last_outcome

    def register_listener(self, listener: AmplifierListener):
        self._callback.register_listener(listener)

    def unregister_listener(self, listener: AmplifierListener):
        self._callback.unregister_listener(listener)

    async def start_scan(self):
        """Start (or restart) a scan window.

        Raises:
            NotOnLocalNetworkError: there is no usable LAN address; the scanner
                stays idle and the previous candidate list is kept
        """
        local_address = self._local_address_resolver()
        if not is_local_network_address(local_address):
            self._logger.error(f"SCAN: not on a suitable network (local address: {local_address})")
            raise NotOnLocalNetworkError(
                "Not on a suitable network. Connect to your home WiFi network first."
            )

        if self._state is ScannerState.SCANNING:
            self._logger.info("SCAN: restarting scan window")
            self._close_scan()

        self._generation += 1
        generation = self._generation
        self._candidates = []
        self._last_outcome = None
        self._scan_finished_event.clear()
        self._state = ScannerState.SCANNING

        try:
            transport = await self._open_endpoint(local_address, generation)
        except OSError as e:
            if generation != self._generation:
                # Superseded while binding; the newer scan owns the state
                self._logger.debug(f"SCAN: ignoring bind failure of a superseded scan: {e}")
                return
            self._logger.error(f"SCAN: could not bind to {local_address}: {e}")
            self._state = ScannerState.IDLE
            self._scan_finished_event.set()
            raise NotOnLocalNetworkError(f"Could not listen on {local_address}: {e}") from e

        if generation != self._generation:
            # Superseded by another start_scan() while binding
            transport.close()
            return

        self._transport = transport
        self._callback.scan_started()
        self._logger.info(f"SCAN: searching for '{self._device_marker}' devices from {local_address} "
                          f"for {self._scan_window}s")
        transport.sendto(build_search_request(self._search_target), (SSDP_ADDRESS, SSDP_PORT))
        self._window_timer = asyncio.get_running_loop().call_later(
            self._scan_window, self._finish_scan, generation
        )

    async def scan(self) -> list[DiscoveredCandidate]:
        """Run a full scan window and return what was found."""
        await self.start_scan()
        await self._scan_finished_event.wait()
        return self.candidates

    def stop(self):
        """End the current scan window early."""
        if self._state is ScannerState.SCANNING:
            self._finish_scan(self._generation)

    async def _open_endpoint(self, local_address: str, generation: int) -> asyncio.DatagramTransport:
        loop = asyncio.get_running_loop()
        transport, _ = await loop.create_datagram_endpoint(
            lambda: _SsdpProtocol(self, generation),
            local_addr=(local_address, 0),
            family=socket.AF_INET,
        )
        return transport

    def _close_scan(self):
        if self._window_timer is not None:
            self._window_timer.cancel()
            self._window_timer = None
        if self._transport is not None:
            self._transport.close()
            self._transport = None

    def _finish_scan(self, generation: int):
        if generation != self._generation or self._state is not ScannerState.SCANNING:
            return
        self._close_scan()
        self._state = ScannerState.IDLE
        self._last_outcome = ScanOutcome.FOUND if self._candidates else ScanOutcome.NONE_FOUND
        if self._candidates:
            self._logger.info(f"SCAN: finished, {len(self._candidates)} device(s) found")
        else:
            self._logger.info("SCAN: finished, no amplifier systems found on this network")
        self._scan_finished_event.set()
        self._callback.scan_finished(self._last_outcome, self.candidates)

    def _advertisement_received(self, data: bytes, addr: Any, generation: int):
        if generation != self._generation or self._state is not ScannerState.SCANNING:
            return
        headers = parse_ssdp_headers(data)
        if headers is None:
            self._logger.debug(f"SCAN: ignoring non-SSDP datagram from {addr}")
            return
        try:
            candidate = parse_candidate(headers, self._device_marker)
        except ValueError as e:
            self._logger.warning(f"SCAN: failed to parse advertisement from {addr}: {e}")
            return
        if candidate is None:
            return
        if any(existing.id == candidate.id for existing in self._candidates):
            self._logger.debug(f"SCAN: duplicate advertisement from {candidate.address}")
            return
        self._candidates.append(candidate)
        self._logger.info(f"RECV: found {candidate.name} at {candidate.address}")
        self._callback.candidate_found(candidate)

    # ========== Device description ==========

    async def describe(self, candidate: DiscoveredCandidate,
                       timeout: float = DEFAULT_DESCRIPTION_TIMEOUT) -> Optional[DeviceDescription]:
        """Fetch and parse the device description XML a candidate advertises.

        Returns None if the candidate has no LOCATION or the description
        cannot be fetched or parsed.
        """
        if not candidate.location:
            return None
        if self._session is None:
            self._session = aiohttp.ClientSession()
        try:
            async with self._session.get(candidate.location,
                                         timeout=aiohttp.ClientTimeout(total=timeout)) as response:
                body = await response.text()
            return parse_device_description(body)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self._logger.warning(f"Could not fetch description of {candidate.address}: {e}")
        except ValueError as e:
            self._logger.warning(f"Could not parse description of {candidate.address}: {e}")
        return None

    async def close(self):
        self.stop()
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None


def parse_device_description(xml: str) -> DeviceDescription:
    """Parse a UPnP description document (<root><device>...</device></root>).

    Raises:
        ValueError: not a device description
    """
    try:
        document = xmltodict.parse(xml)
    except ExpatError as e:
        raise ValueError(f"invalid XML: {e}") from e
    device = (document.get("root") or {}).get("device") if isinstance(document, dict) else None
    if not isinstance(device, dict):
        raise ValueError("no <device> element in description")
    return DeviceDescription(
        friendly_name=device.get("friendlyName"),
        model_name=device.get("modelName"),
        manufacturer=device.get("manufacturer"),
        serial_number=device.get("serialNumber"),
        udn=device.get("UDN"),
    )
