"""
Cueboard

Main entry point. Runs one of the three participants:
    serve     settings store, relay and HTTP API on one port
    playback  the playback node (renders audio)
    remote    a console controller
"""

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from .audio_playback import PlaybackEngine
from .catalog import ClipCatalog
from .clip_loader import FileClipLoader, HttpClipLoader
from .config import CueboardConfig, load_config
from .errors import CorruptState, PersistenceError
from .playback_node import PlaybackNode
from .remote import ConsoleRemote
from .server import CueboardServer

logger = logging.getLogger('cueboard')

LOG_FORMAT = '[%(asctime)s] %(levelname)s %(name)s: %(message)s'


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='cueboard', description='Soundboard relay and playback node')
    parser.add_argument('--config', help='JSON config file (default: $CUEBOARD_CONFIG)')
    parser.add_argument('-v', '--verbose', action='store_true', help='debug logging')
    sub = parser.add_subparsers(dest='command', required=True)

    serve = sub.add_parser('serve', help='run the relay server')
    serve.add_argument('--host')
    serve.add_argument('--port', type=int)
    serve.add_argument('--sounds-dir')
    serve.add_argument('--settings-file')

    playback = sub.add_parser('playback', help='run the playback node')
    playback.add_argument('--server', help='server URL, e.g. http://localhost:3000')
    playback.add_argument('--sounds-dir', help='load clips from this directory instead of HTTP')
    playback.add_argument('--device', type=int, help='output device index')
    playback.add_argument('--list-devices', action='store_true', help='list output devices and exit')

    remote = sub.add_parser('remote', help='run a console controller')
    remote.add_argument('--server', help='server URL, e.g. http://localhost:3000')

    return parser


def apply_overrides(config: CueboardConfig, args: argparse.Namespace) -> CueboardConfig:
    """Command line flags win over config file values."""
    overrides = {
        'host': (config.server, 'host'),
        'port': (config.server, 'port'),
        'settings_file': (config.server, 'settings_file'),
        'server': (config.client, 'server_url'),
        'device': (config.playback, 'device'),
    }
    for arg, (section, name) in overrides.items():
        value = getattr(args, arg, None)
        if value is not None:
            setattr(section, name, value)

    sounds_dir = getattr(args, 'sounds_dir', None)
    if sounds_dir is not None:
        if args.command == 'serve':
            config.server.sounds_dir = sounds_dir
        else:
            config.playback.sounds_dir = sounds_dir
    return config


async def serve(config: CueboardConfig) -> None:
    server = CueboardServer(config.server)
    await server.start()
    try:
        await asyncio.Event().wait()
    finally:
        await server.stop()


async def playback(config: CueboardConfig) -> None:
    pb = config.playback
    if pb.sounds_dir:
        loader = FileClipLoader(ClipCatalog(pb.sounds_dir), pb.sample_rate, pb.channels)
    else:
        loader = HttpClipLoader(config.client.server_url, pb.sample_rate, pb.channels)

    print("=" * 50)
    print("Cueboard playback node")
    print(f"  server: {config.client.server_url}")
    print(f"  clips:  {pb.sounds_dir or 'fetched over HTTP'}")
    print("=" * 50)

    node = PlaybackNode(PlaybackEngine(loader, pb), config.client)
    await node.run()


async def remote(config: CueboardConfig) -> None:
    print(f"Cueboard remote for {config.client.server_url} (type 'help')")
    await ConsoleRemote(config.client).run()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format=LOG_FORMAT
    )

    if args.command == 'playback' and args.list_devices:
        for dev in PlaybackEngine.list_output_devices():
            print(f"  [{dev['id']}] {dev['name']} ({dev['channels']} ch, {dev['sample_rate']:.0f} Hz)")
        return 0

    config = apply_overrides(load_config(args.config), args)
    runners = {'serve': serve, 'playback': playback, 'remote': remote}

    try:
        asyncio.run(runners[args.command](config))
    except KeyboardInterrupt:
        print("\nShutting down...")
    except CorruptState as e:
        logger.error("Settings file is corrupt, refusing to overwrite it: %s", e)
        return 1
    except PersistenceError as e:
        logger.error("Settings file could not be written: %s", e)
        return 1
    except OSError as e:
        logger.error("Could not start: %s", e)
        return 1
    except RuntimeError as e:
        logger.error("%s", e)
        return 1
    return 0


def run():
    """Console script entry point."""
    sys.exit(main())


if __name__ == "__main__":
    run()
