"""
Main command-line interface for pypepro.

This script provides a CLI to find and control a PE PRO amplifier.
"""

import argparse
import asyncio
import logging

from pypepro.amplifier import DEFAULT_AP_HOST, PEProAmplifier
from pypepro.errors import PEProError
from pypepro.listener import LoggingListener
from pypepro.models import PresetCategory
from pypepro.protocol import CHANNEL_CONTROLS, INPUT_MODES
from pypepro.storage import DEFAULT_DATABASE, Database

CHANNELS = {control.value: control for control in CHANNEL_CONTROLS}


def _amplifier(args, database=None) -> PEProAmplifier:
    return PEProAmplifier(
        args.host,
        database=database,
        request_timeout=args.timeout,
        scan_window=args.scan_time,
    )


async def scan(args):
    """Scan the local network and list the amplifiers found."""
    amplifier = _amplifier(args)
    print(f"Scanning for {args.scan_time}s...")
    try:
        candidates = await amplifier.scan()
        if not candidates:
            print("No amplifier systems found on this network.")
        for candidate in candidates:
            print(f"{candidate.name:40s} {candidate.address}")
            if args.describe:
                description = await amplifier.scanner.describe(candidate)
                if description:
                    print(f"    model: {description.model_name}  serial: {description.serial_number}")
    finally:
        await amplifier.close()


async def connect(args):
    """Run the presence/serial handshake and remember the device."""
    with Database(args.db) as database:
        amplifier = _amplifier(args, database)
        try:
            device = await amplifier.connect(args.host)
            print(f"Connected to {device.name} (model {device.model_code}, serial {device.serial_no})")
        finally:
            await amplifier.close()


async def control(args, action):
    """Apply one control change and wait until it has been sent."""
    with Database(args.db) as database:
        amplifier = _amplifier(args, database)
        amplifier.register_listener(LoggingListener())
        try:
            action(amplifier)
            await amplifier.dispatcher.join()
            for result in amplifier.dispatcher.results:
                print(f"{str(result.command):20s} {result.outcome.name}"
                      + (f" ({result.error})" if result.error else ""))
        finally:
            await amplifier.close()


def list_presets(args):
    with Database(args.db) as database:
        for preset in database.presets.list():
            kind = "factory" if preset.category is PresetCategory.FACTORY else "custom"
            values = preset.values
            print(f"{preset.id:4d} {preset.name:20s} [{kind:7s}] vol={values.volume} bass={values.bass} "
                  f"mid={values.mid} treble={values.treble} mode={values.mode}")


def delete_preset(args):
    with Database(args.db) as database:
        database.presets.delete(args.preset_id)
        print(f"Deleted preset {args.preset_id}")


def save_preset(args):
    with Database(args.db) as database:
        amplifier = PEProAmplifier(database=database)
        preset_id = amplifier.save_preset(args.name)
        print(f"Saved current settings as preset {preset_id} ({args.name})")


def main():
    parser = argparse.ArgumentParser(description="Control PE PRO Digital 5.1 Amplifier")
    parser.add_argument("--host", default=DEFAULT_AP_HOST, help=f"Amplifier address (default: {DEFAULT_AP_HOST})")
    parser.add_argument("--db", default=DEFAULT_DATABASE, help=f"Settings database (default: {DEFAULT_DATABASE})")
    parser.add_argument("--timeout", type=float, default=5.0, help="Per-command timeout in seconds (default: 5)")
    parser.add_argument("--scan-time", type=float, default=5.0, help="Scan window in seconds (default: 5)")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    scan_parser = subparsers.add_parser("scan", help="Find amplifiers on the local network")
    scan_parser.add_argument("--describe", action="store_true", help="Fetch each device's description")

    subparsers.add_parser("connect", help="Connect to the amplifier at --host and pair it")

    for name in ("volume", "bass", "mid", "treble"):
        level_parser = subparsers.add_parser(name, help=f"Set {name} (0-100)")
        level_parser.add_argument("level", type=int)

    channel_parser = subparsers.add_parser("channel", help="Set a channel's attenuation level")
    channel_parser.add_argument("channel", choices=sorted(CHANNELS))
    channel_parser.add_argument("level", type=int)

    for name in ("tone", "surround"):
        flag_parser = subparsers.add_parser(name, help=f"Switch {name} on or off")
        flag_parser.add_argument("state", choices=["on", "off"])

    input_parser = subparsers.add_parser("input", help="Select the input")
    input_parser.add_argument("mode", choices=INPUT_MODES)

    subparsers.add_parser("mute", help="Toggle mute")

    ir_parser = subparsers.add_parser("ir", help="Send a raw IR code")
    ir_parser.add_argument("code")

    subparsers.add_parser("presets", help="List presets")

    save_parser = subparsers.add_parser("save-preset", help="Save the last settings as a preset")
    save_parser.add_argument("name")

    apply_parser = subparsers.add_parser("apply-preset", help="Send all values of a preset")
    apply_parser.add_argument("preset_id", type=int)

    delete_parser = subparsers.add_parser("delete-preset", help="Delete a custom preset")
    delete_parser.add_argument("preset_id", type=int)

    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.debug else logging.INFO)

    actions = {
        "volume": lambda amp: amp.set_master_volume(args.level),
        "bass": lambda amp: amp.set_bass(args.level),
        "mid": lambda amp: amp.set_mid(args.level),
        "treble": lambda amp: amp.set_treble(args.level),
        "channel": lambda amp: amp.set_channel_level(CHANNELS.get(args.channel), args.level),
        "tone": lambda amp: amp.set_tone(args.state == "on"),
        "surround": lambda amp: amp.set_surround(args.state == "on"),
        "input": lambda amp: amp.set_input_mode(args.mode),
        "mute": lambda amp: amp.mute(),
        "ir": lambda amp: amp.send_ir(args.code),
        "apply-preset": lambda amp: amp.apply_preset(args.preset_id),
    }

    try:
        if args.command == "scan":
            asyncio.run(scan(args))
        elif args.command == "connect":
            asyncio.run(connect(args))
        elif args.command in actions:
            asyncio.run(control(args, actions[args.command]))
        elif args.command == "presets":
            list_presets(args)
        elif args.command == "save-preset":
            save_preset(args)
        elif args.command == "delete-preset":
            delete_preset(args)
        else:
            parser.print_help()
    except PEProError as e:
        print(f"Error: {e}")


if __name__ == "__main__":
    main()
