import asyncio

import pytest

from pypepro.discovery import (
    SSDP_ADDRESS,
    SSDP_PORT,
    DeviceScanner,
    DiscoveredCandidate,
    ScannerState,
    ScanOutcome,
    _SsdpProtocol,
    build_search_request,
    is_local_network_address,
    parse_candidate,
    parse_device_description,
    parse_ssdp_headers,
)
from pypepro.errors import NotOnLocalNetworkError

from conftest import FakeSession, RecordingListener

LAN_ADDRESS = "192.168.1.10"


def advertisement(location="http://192.168.1.55:80/description.xml",
                  server="PE PRO Digital 5.1 Amplifier/1.0 UPnP/1.0") -> bytes:
    return (
        "HTTP/1.1 200 OK\r\n"
        "CACHE-CONTROL: max-age=1800\r\n"
        f"LOCATION: {location}\r\n"
        f"SERVER: {server}\r\n"
        "ST: upnp:rootdevice\r\n"
        "\r\n"
    ).encode()


class FakeTransport:
    def __init__(self):
        self.sent = []
        self.closed = False

    def sendto(self, data, addr):
        self.sent.append((data, addr))

    def close(self):
        self.closed = True


class FakeNetwork:
    """Replaces the scanner's UDP endpoint; keeps one (protocol, transport) per scan."""

    def __init__(self, scanner: DeviceScanner):
        self.endpoints = []
        scanner._open_endpoint = self.open_endpoint
        self._scanner = scanner

    async def open_endpoint(self, local_address, generation):
        transport = FakeTransport()
        self.endpoints.append((_SsdpProtocol(self._scanner, generation), transport))
        return transport

    def answer(self, data, addr=("192.168.1.55", 1900), scan=-1):
        protocol, _ = self.endpoints[scan]
        protocol.datagram_received(data, addr)


@pytest.fixture()
def scanner_listener():
    return RecordingListener()


@pytest.fixture()
def scanner(scanner_listener):
    scanner = DeviceScanner(scan_window=0.1, local_address_resolver=lambda: LAN_ADDRESS)
    scanner.register_listener(scanner_listener)
    return scanner


def test_parse_ssdp_headers():
    headers = parse_ssdp_headers(advertisement())
    assert headers["LOCATION"] == "http://192.168.1.55:80/description.xml"
    assert headers["SERVER"].startswith("PE PRO")
    assert parse_ssdp_headers(b"M-SEARCH * HTTP/1.1\r\n\r\n") is None
    assert parse_ssdp_headers(b"") is None


def test_parse_candidate():
    candidate = parse_candidate(parse_ssdp_headers(advertisement()))
    assert candidate == DiscoveredCandidate(
        id="192.168.1.55",
        name="PE PRO Digital 5.1 Amplifier",
        address="192.168.1.55",
        location="http://192.168.1.55:80/description.xml",
    )


def test_parse_candidate_ignores_other_devices():
    headers = parse_ssdp_headers(advertisement(server="Linux/5.4 UPnP/1.0 MiniDLNA/1.3"))
    assert parse_candidate(headers) is None


def test_parse_candidate_rejects_bad_location():
    headers = parse_ssdp_headers(advertisement(location="not a url"))
    with pytest.raises(ValueError):
        parse_candidate(headers)


def test_search_request():
    request = build_search_request().decode()
    assert request.startswith("M-SEARCH * HTTP/1.1\r\n")
    assert "HOST: 239.255.255.250:1900\r\n" in request
    assert 'MAN: "ssdp:discover"' in request
    assert "ST: ssdp:all\r\n" in request
    assert request.endswith("\r\n\r\n")


@pytest.mark.parametrize("address, expected", [
    ("192.168.1.10", True),
    ("10.0.0.7", True),
    ("172.16.4.2", True),
    ("127.0.0.1", False),
    ("169.254.10.1", False),
    ("0.0.0.0", False),
    ("8.8.8.8", False),
    ("fe80::1", False),
    (None, False),
    ("garbage", False),
])
def test_is_local_network_address(address, expected):
    assert is_local_network_address(address) is expected


@pytest.mark.asyncio
async def test_scan_finds_deduplicated_candidates(scanner, scanner_listener):
    network = FakeNetwork(scanner)
    await scanner.start_scan()

    assert scanner.state is ScannerState.SCANNING
    (_, transport), = network.endpoints
    assert transport.sent == [(build_search_request(), (SSDP_ADDRESS, SSDP_PORT))]

    network.answer(advertisement())
    network.answer(advertisement())  # same device answers twice
    network.answer(advertisement(server="Linux UPnP/1.0 Sonos/70.3"))
    network.answer(advertisement(location="http://192.168.1.56/desc.xml"))
    network.answer(advertisement(location="::::"))  # malformed, dropped
    network.answer(b"garbage")

    assert [c.address for c in scanner.candidates] == ["192.168.1.55", "192.168.1.56"]
    assert scanner_listener.found == scanner.candidates

    await asyncio.sleep(0.2)
    assert scanner.state is ScannerState.IDLE
    assert scanner.last_outcome is ScanOutcome.FOUND
    assert transport.closed
    assert scanner_listener.started == 1
    assert scanner_listener.finished == [(ScanOutcome.FOUND, scanner.candidates)]


@pytest.mark.asyncio
async def test_scan_without_answers_reports_none_found(scanner, scanner_listener):
    FakeNetwork(scanner)

    assert await scanner.scan() == []
    assert scanner.last_outcome is ScanOutcome.NONE_FOUND
    assert scanner_listener.finished == [(ScanOutcome.NONE_FOUND, [])]


@pytest.mark.asyncio
async def test_answers_after_window_are_ignored(scanner):
    network = FakeNetwork(scanner)
    await scanner.start_scan()
    scanner.stop()

    network.answer(advertisement())
    assert scanner.candidates == []
    assert scanner.state is ScannerState.IDLE


@pytest.mark.asyncio
async def test_scan_off_lan_keeps_previous_candidates(scanner):
    network = FakeNetwork(scanner)
    address = {"value": LAN_ADDRESS}
    scanner._local_address_resolver = lambda: address["value"]

    await scanner.start_scan()
    network.answer(advertisement())
    scanner.stop()
    found = scanner.candidates

    for off_lan in (None, "127.0.0.1", "100.72.1.3"):
        address["value"] = off_lan
        with pytest.raises(NotOnLocalNetworkError):
            await scanner.start_scan()
        assert scanner.state is ScannerState.IDLE
        assert scanner.candidates == found
    assert len(network.endpoints) == 1


@pytest.mark.asyncio
async def test_restart_discards_previous_scan(scanner_listener):
    scanner = DeviceScanner(listener=scanner_listener, scan_window=0.3,
                            local_address_resolver=lambda: LAN_ADDRESS)
    network = FakeNetwork(scanner)
    await scanner.start_scan()
    network.answer(advertisement())
    await asyncio.sleep(0.2)

    await scanner.start_scan()
    assert scanner.candidates == []
    assert network.endpoints[0][1].closed

    # Late answer to the first scan
    network.answer(advertisement(location="http://192.168.1.99/d.xml"), scan=0)
    assert scanner.candidates == []

    # The first scan's window would have closed here
    await asyncio.sleep(0.15)
    assert scanner.state is ScannerState.SCANNING

    network.answer(advertisement(location="http://192.168.1.57/d.xml"))
    await asyncio.sleep(0.3)
    assert scanner.state is ScannerState.IDLE
    assert [c.address for c in scanner.candidates] == ["192.168.1.57"]
    assert scanner_listener.started == 2
    assert len(scanner_listener.finished) == 1


@pytest.mark.asyncio
async def test_bind_failure_raises(scanner):
    async def open_endpoint(local_address, generation):
        raise OSError("Cannot assign requested address")

    scanner._open_endpoint = open_endpoint
    with pytest.raises(NotOnLocalNetworkError):
        await scanner.start_scan()
    assert scanner.state is ScannerState.IDLE


@pytest.mark.asyncio
async def test_bind_failure_of_superseded_scan_leaves_restart_running(scanner, scanner_listener):
    first_bind_may_fail = asyncio.Event()
    transports = []

    async def open_endpoint(local_address, generation):
        if generation == 1:
            await first_bind_may_fail.wait()
            raise OSError("Cannot assign requested address")
        transport = FakeTransport()
        transports.append(transport)
        return transport

    scanner._open_endpoint = open_endpoint
    first = asyncio.ensure_future(scanner.start_scan())
    await asyncio.sleep(0)

    await scanner.start_scan()
    first_bind_may_fail.set()
    await first

    assert scanner.state is ScannerState.SCANNING
    await asyncio.sleep(0.2)
    assert transports[0].closed
    assert scanner.state is ScannerState.IDLE
    assert scanner.last_outcome is ScanOutcome.NONE_FOUND
    assert scanner_listener.finished == [(ScanOutcome.NONE_FOUND, [])]


DESCRIPTION = """<?xml version="1.0"?>
<root xmlns="urn:schemas-upnp-org:device-1-0">
  <specVersion><major>1</major><minor>0</minor></specVersion>
  <device>
    <deviceType>urn:schemas-upnp-org:device:MediaRenderer:1</deviceType>
    <friendlyName>Living Room PE PRO</friendlyName>
    <manufacturer>Perfect Audio</manufacturer>
    <modelName>PEPRO51</modelName>
    <serialNumber>A1B2C3</serialNumber>
    <UDN>uuid:2f402f80-da50-11e1-9b23-001788255acc</UDN>
  </device>
</root>
"""


def test_parse_device_description():
    description = parse_device_description(DESCRIPTION)
    assert description.friendly_name == "Living Room PE PRO"
    assert description.model_name == "PEPRO51"
    assert description.serial_number == "A1B2C3"
    assert description.udn.startswith("uuid:")


@pytest.mark.parametrize("xml", ["<root></root>", "<html><body/></html>", "<root><device>"])
def test_parse_device_description_rejects_other_documents(xml):
    with pytest.raises(ValueError):
        parse_device_description(xml)


@pytest.mark.asyncio
async def test_describe_fetches_location():
    session = FakeSession(lambda url: (200, DESCRIPTION))
    scanner = DeviceScanner(session=session)
    candidate = DiscoveredCandidate("192.168.1.55", "PE PRO", "192.168.1.55",
                                    "http://192.168.1.55/description.xml")

    description = await scanner.describe(candidate)

    assert session.requests == ["http://192.168.1.55/description.xml"]
    assert description.manufacturer == "Perfect Audio"

    session.handler = lambda url: (200, "<html>")
    assert await scanner.describe(candidate) is None
    assert await scanner.describe(DiscoveredCandidate("x", "x", "x")) is None


@pytest.mark.asyncio
async def test_listener_passed_in_can_be_joined_by_others(scanner_listener):
    scanner = DeviceScanner(listener=scanner_listener, scan_window=0.05,
                            local_address_resolver=lambda: LAN_ADDRESS)
    other = RecordingListener()
    scanner.register_listener(other)
    FakeNetwork(scanner)

    await scanner.scan()

    assert scanner_listener.started == other.started == 1
    assert scanner_listener.finished == other.finished == [(ScanOutcome.NONE_FOUND, [])]
