"""
Console Remote
A terminal controller: shows the clip grid and sends commands typed on stdin.

Commands:
    play <clip>          trigger a clip (number, filename or id)
    stop                 stop all clips
    vol <clip> <0-1>     set a clip's volume
    color <clip> <n|#hex>  set a clip's color (preset number or hex)
    master <0-1>         set master volume
    cols <n>             set the grid width
    show                 redraw the grid
    quit                 exit
"""

import asyncio
import logging
import sys
from typing import List, Optional

import aiohttp

from .catalog import ClipDescriptor
from .client import RelayClient
from .config import ClientConfig
from .controller import COLOR_PRESETS, ControllerViewModel
from .messages import Message, SettingsSaveFailed, SoundEnded, SoundStarted
from .relay import Role

logger = logging.getLogger(__name__)

HELP = __doc__.split('Commands:', 1)[1].rstrip()


class ConsoleRemote:
    """Relay participant in the controller role driven from a terminal."""

    def __init__(self, config: Optional[ClientConfig] = None):
        self.config = config or ClientConfig()
        self.vm = ControllerViewModel()
        self.client = RelayClient(
            Role.CONTROLLER.value, self.config,
            on_message=self.handle_message,
            on_connected=self.refresh_catalog,
            on_connection_lost=self.vm.connection_lost
        )

    async def handle_message(self, message: Message) -> None:
        if not self.vm.apply(message):
            return
        if isinstance(message, SettingsSaveFailed):
            print(f"! could not save {message.setting}: {message.error}")
        elif isinstance(message, (SoundStarted, SoundEnded)):
            state = 'playing' if isinstance(message, SoundStarted) else 'stopped'
            print(f"  {message.sound_id} {state}")
        else:
            self.show()

    async def refresh_catalog(self) -> None:
        url = f"{self.config.server_url.rstrip('/')}/catalog"
        try:
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=5.0)) as session:
                async with session.get(url) as resp:
                    resp.raise_for_status()
                    names = await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.warning("Could not fetch catalog from %s: %s", url, e)
            return
        self.vm.set_catalog(ClipDescriptor.from_filename(name) for name in names)

    # === Rendering ===

    def show(self) -> None:
        print("-" * 50)
        print(f"  Master {self.vm.master_volume:.2f}   Columns {self.vm.columns}")
        index = 1
        for row in self.vm.rows():
            cells = []
            for button in row:
                marker = '>' if button.playing else ' '
                cells.append(f"{marker}{index:>2} {button.label[:14]:<14} {button.volume:.2f}")
                index += 1
            print("  " + " | ".join(cells))
        if not self.vm.clips:
            print("  (no clips)")
        print("-" * 50)

    # === Commands ===

    def execute(self, line: str) -> bool:
        """Run one command line. Returns False when the user asked to quit."""
        parts = line.split()
        if not parts:
            return True
        command, args = parts[0].lower(), parts[1:]

        try:
            if command in ('quit', 'exit', 'q'):
                return False
            elif command == 'help':
                print(HELP)
            elif command == 'show':
                self.show()
            elif command == 'stop':
                self._send(self.vm.stop_all())
            elif command == 'play':
                self._send(self.vm.play(self._clip(args).id))
            elif command == 'vol':
                self._send(self.vm.set_clip_volume(self._clip(args).id, float(args[1])))
            elif command == 'color':
                self._send(self.vm.set_clip_color(self._clip(args).id, self._color(args[1])))
            elif command == 'master':
                self._send(self.vm.set_master_volume(float(args[0])))
            elif command == 'cols':
                self._send(self.vm.set_columns(int(args[0])))
            else:
                print(f"Unknown command: {command} (try 'help')")
        except (IndexError, ValueError) as e:
            print(f"Bad arguments for {command}: {e}")
        return True

    def _clip(self, args: List[str]) -> ClipDescriptor:
        if not args:
            raise ValueError('missing clip')
        clip = self.vm.find_clip(args[0])
        if clip is None:
            raise ValueError(f"no clip {args[0]!r}")
        return clip

    @staticmethod
    def _color(value: str) -> str:
        if value.isdigit():
            index = int(value) - 1
            if not 0 <= index < len(COLOR_PRESETS):
                raise ValueError(f"preset must be 1-{len(COLOR_PRESETS)}")
            return COLOR_PRESETS[index]
        return value

    def _send(self, message: Message) -> None:
        if not self.client.send(message):
            print("! not connected")

    async def _read_commands(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line or not self.execute(line):
                break

    async def run(self) -> None:
        connection = asyncio.create_task(self.client.run())
        try:
            await self._read_commands()
        finally:
            await self.client.close()
            connection.cancel()
            await asyncio.gather(connection, return_exceptions=True)
