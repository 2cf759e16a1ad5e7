import asyncio
from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest

from pypepro.amplifier import ConnectionStatus, PEProAmplifier
from pypepro.errors import ConnectionFailedError, DeviceNotReadyError
from pypepro.models import ControlValues, PresetCategory
from pypepro.protocol import Control

from conftest import HOST, FakeSession, RecordingListener

HANDSHAKE = {
    "/isthere/": (200, "YES/PEPRO51/"),
    "/getSerial/": (200, "serial/PEPRO51/A1B2C3/"),
}


def handshake(url):
    for path, answer in HANDSHAKE.items():
        if url.endswith(path):
            return answer
    return 200, "OK"


@pytest.fixture()
def amp_session():
    return FakeSession(handshake)


@pytest.fixture()
def amplifier(amp_session, database):
    return PEProAmplifier(HOST, database=database, session=amp_session,
                          inter_command_delay=0.0, scanner=MagicMock())


@pytest.mark.asyncio
async def test_connect_pairs_device(amp_session, database):
    listener = RecordingListener()
    amplifier = PEProAmplifier(database=database, session=amp_session, scanner=MagicMock())
    amplifier.register_listener(listener)

    device = await amplifier.connect("192.168.1.55", name="Lounge")

    assert amp_session.requests == ["http://192.168.1.55/isthere/", "http://192.168.1.55/getSerial/"]
    assert device.id == "A1B2C3"
    assert device.name == "Lounge"
    assert device.model_code == "PEPRO51"
    assert device.ip_address == "192.168.1.55"
    assert amplifier.status is ConnectionStatus.CONNECTED
    assert amplifier.host == "http://192.168.1.55"
    assert listener.statuses == [ConnectionStatus.CONNECTING, ConnectionStatus.CONNECTED]
    assert database.devices.get("A1B2C3") == device
    assert database.settings.last_connected_device_id == "A1B2C3"


@pytest.mark.asyncio
async def test_reconnect_keeps_stored_name(amp_session, database):
    amplifier = PEProAmplifier(database=database, session=amp_session, scanner=MagicMock())
    await amplifier.connect("192.168.1.55")
    assert amplifier.device.name == "PE PRO PEPRO51"

    database.devices.rename("A1B2C3", "Kitchen")
    device = await amplifier.connect("192.168.1.60", name="ignored")
    assert device.name == "Kitchen"
    assert device.ip_address == "192.168.1.60"


@pytest.mark.asyncio
@pytest.mark.parametrize("answer", [
    (200, "NO"),
    aiohttp.ClientConnectionError("refused"),
])
async def test_connect_failure(answer):
    session = FakeSession(lambda url: answer)
    amplifier = PEProAmplifier(session=session, scanner=MagicMock())

    with pytest.raises(ConnectionFailedError):
        await amplifier.connect("192.168.1.55")

    assert amplifier.status is ConnectionStatus.ERROR
    assert amplifier.host is None
    with pytest.raises(DeviceNotReadyError):
        amplifier.set_master_volume(10)


@pytest.mark.asyncio
@pytest.mark.parametrize("call", [
    lambda amp: amp.set_master_volume(90),
    lambda amp: amp.set_channel_level(Control.CENTER, 5),
    lambda amp: amp.set_surround(True),
    lambda amp: amp.set_input_mode("AUX2"),
    lambda amp: amp.apply_settings(ControlValues(volume=1, mode="AUX3")),
])
async def test_rejected_change_without_host_keeps_settings(database, call):
    database.settings.last_settings = ControlValues(volume=12)
    scanner = MagicMock()
    scanner.close = AsyncMock()
    amplifier = PEProAmplifier(database=database, session=FakeSession(), scanner=scanner)
    before = amplifier.settings

    with pytest.raises(DeviceNotReadyError):
        call(amplifier)

    assert amplifier.settings == before
    await amplifier.close()
    assert database.settings.last_settings == before


@pytest.mark.asyncio
async def test_connect_times_out():
    session = FakeSession(lambda url: asyncio.get_running_loop().create_future())
    amplifier = PEProAmplifier(session=session, handshake_timeout=0.05, scanner=MagicMock())

    with pytest.raises(ConnectionFailedError):
        await amplifier.connect()

    assert session.requests == ["http://192.168.4.1/isthere/"]
    assert amplifier.status is ConnectionStatus.ERROR


@pytest.mark.asyncio
async def test_setters_queue_commands_and_track_settings(amplifier, amp_session):
    amplifier.set_master_volume(40)
    amplifier.set_bass(70)
    amplifier.set_channel_level(Control.REAR_LEFT, 15)
    amplifier.set_tone(True)
    amplifier.set_input_mode("AUX3")
    amplifier.mute()
    amplifier.send_ir("0x20DF10EF")
    await amplifier.dispatcher.join()

    assert amp_session.paths == ["/mav/40/", "/bsv/70/", "/rlv/15/", "/ton/1/", "/inp/2/",
                                 "/mut/", "/irs/0x20DF10EF/"]
    settings = amplifier.settings
    assert (settings.volume, settings.bass, settings.rear_left) == (40, 70, 15)
    assert settings.tone is True
    assert settings.mode == "AUX3"


@pytest.mark.asyncio
@pytest.mark.parametrize("call", [
    lambda amp: amp.set_master_volume(101),
    lambda amp: amp.set_bass(-1),
    lambda amp: amp.set_treble(True),
    lambda amp: amp.set_mid("50"),
    lambda amp: amp.set_channel_level(Control.BASS, 20),
    lambda amp: amp.set_input_mode("Phono"),
    lambda amp: amp.send_ir(""),
])
async def test_invalid_values_are_rejected(amplifier, call):
    before = amplifier.settings
    call(amplifier)
    assert amplifier.dispatcher.pending == ()
    assert amplifier.settings == before


@pytest.mark.asyncio
async def test_apply_preset_sends_all_values(amplifier, amp_session, database):
    jazz = next(p for p in amplifier.presets(PresetCategory.FACTORY) if p.name == "Jazz")

    amplifier.apply_preset(jazz.id)
    await amplifier.dispatcher.join()

    assert amp_session.paths[:4] == ["/mav/65/", "/bsv/60/", "/mdv/65/", "/trv/60/"]
    assert len(amp_session.paths) == 12
    assert amplifier.settings == jazz.values
    assert database.settings.last_settings == jazz.values


@pytest.mark.asyncio
async def test_save_and_delete_preset(amplifier):
    amplifier.set_master_volume(22)
    preset_id = amplifier.save_preset("Quiet")

    saved = amplifier.presets(PresetCategory.CUSTOM)
    assert [p.id for p in saved] == [preset_id]
    assert saved[0].values.volume == 22

    assert amplifier.delete_preset(preset_id)
    assert amplifier.presets(PresetCategory.CUSTOM) == []
    await amplifier.dispatcher.join()


def test_presets_need_a_database():
    amplifier = PEProAmplifier(scanner=MagicMock())
    with pytest.raises(RuntimeError):
        amplifier.presets()


@pytest.mark.asyncio
async def test_last_settings_restored_and_saved_on_close(amp_session, database):
    database.settings.last_settings = ControlValues(volume=12)
    scanner = MagicMock()
    scanner.close = AsyncMock()
    amplifier = PEProAmplifier(HOST, database=database, session=amp_session,
                               inter_command_delay=0.0, scanner=scanner)
    assert amplifier.settings.volume == 12

    amplifier.set_bass(80)
    await amplifier.dispatcher.join()
    await amplifier.close()

    assert database.settings.last_settings == ControlValues(volume=12, bass=80)
    assert not amp_session.closed
