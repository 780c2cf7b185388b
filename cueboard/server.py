"""
Cueboard Server
aiohttp application serving the REST endpoints, the clip files and the
WebSocket relay channel on a single port.
"""

import logging
import socket
from typing import Optional

from aiohttp import WSMsgType, web

from .catalog import ClipCatalog
from .config import ServerConfig
from .errors import MalformedMessage, PersistenceError
from .relay import Connection, Relay, Role
from .settings_store import SettingsStore

logger = logging.getLogger(__name__)


def get_lan_ip() -> str:
    """Best guess at this host's non-loopback IPv4 address."""
    try:
        s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            # No packet is sent; connect() only selects the outbound interface
            s.connect(('8.8.8.8', 80))
            ip = s.getsockname()[0]
        finally:
            s.close()
    except OSError:
        return 'localhost'
    if ip.startswith('127.'):
        return 'localhost'
    return ip


def resolve_role(request: web.Request) -> Role:
    """Determine the participant role from the handshake request.

    An explicit ?role= query parameter wins. Without one, a browser source
    inside OBS (User-Agent contains "OBS") is the playback node and anything
    else is a controller.

    Raises:
        web.HTTPBadRequest: the role parameter is not a known role.
    """
    requested = request.query.get('role')
    if requested is not None:
        try:
            return Role(requested.lower())
        except ValueError:
            raise web.HTTPBadRequest(text=f"unknown role {requested!r}")

    if 'OBS' in request.headers.get('User-Agent', ''):
        return Role.PLAYBACK
    return Role.CONTROLLER


class WebSocketConnection(Connection):
    """Relay connection backed by an aiohttp WebSocketResponse."""

    def __init__(self, ws: web.WebSocketResponse, role: Role, peer: str = ''):
        super().__init__(role, peer)
        self.ws = ws

    async def send(self, text: str) -> None:
        if self.ws.closed:
            self.alive = False
            return
        await self.ws.send_str(text)

    async def close(self, code: int = 1000, reason: str = '') -> None:
        await self.ws.close(code=code, message=reason.encode('utf-8'))


class CueboardServer:
    """Owns the settings store, the clip catalog and the relay."""

    def __init__(self, config: Optional[ServerConfig] = None):
        self.config = config or ServerConfig()
        self.store = SettingsStore(self.config.settings_file)
        self.catalog = ClipCatalog(self.config.sounds_dir)
        self.relay = Relay(self.store)
        self._runner: Optional[web.AppRunner] = None

    # === HTTP handlers ===

    async def handle_catalog(self, request: web.Request) -> web.Response:
        """GET /catalog: ordered clip filenames."""
        try:
            names = self.catalog.list_names()
        except OSError as e:
            logger.error("Could not list %s: %s", self.catalog.sounds_dir, e)
            return web.json_response({'error': 'could not list sounds'}, status=500)
        return web.json_response(names)

    async def handle_clip_file(self, request: web.Request) -> web.StreamResponse:
        """GET /sounds/{filename}: raw clip bytes for the playback node."""
        filename = request.match_info['filename']
        path = self.catalog.sounds_dir / filename
        if filename != path.name or not path.is_file():
            raise web.HTTPNotFound()
        return web.FileResponse(path)

    async def handle_get_settings(self, request: web.Request) -> web.Response:
        """GET /settings-info: the current settings document."""
        return web.json_response(self.store.get().to_dict())

    async def handle_post_settings(self, request: web.Request) -> web.Response:
        """POST /settings-info: apply a partial settings document."""
        try:
            document = await request.json()
        except (ValueError, RecursionError):
            return web.json_response({'error': 'invalid json'}, status=400)

        try:
            settings = await self.relay.apply_document(document)
        except MalformedMessage as e:
            return web.json_response({'error': str(e)}, status=400)
        except PersistenceError as e:
            return web.json_response({'error': str(e)}, status=500)

        return web.json_response({'status': 'ok', 'settings': settings.to_dict()})

    async def handle_remote_info(self, request: web.Request) -> web.Response:
        """GET /api/remote-info: URLs for onboarding controllers."""
        return web.json_response({
            'remoteUrl': self.remote_url,
            'localUrl': self.local_url
        })

    async def handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            'status': 'ok',
            'connections': self.relay.counts(),
            'playback_connected': self.relay.playback_connection is not None
        })

    async def handle_websocket(self, request: web.Request) -> web.WebSocketResponse:
        """Relay channel for controllers and the playback node."""
        role = resolve_role(request)

        ws = web.WebSocketResponse(heartbeat=30.0)
        await ws.prepare(request)

        conn = WebSocketConnection(ws, role, peer=request.remote or '')
        if not await self.relay.on_connect(conn):
            return ws

        try:
            async for msg in ws:
                if msg.type in (WSMsgType.TEXT, WSMsgType.BINARY):
                    await self.relay.on_message(conn, msg.data)
                elif msg.type == WSMsgType.ERROR:
                    logger.warning("WebSocket error on %r: %s", conn, ws.exception())
        finally:
            await self.relay.on_disconnect(conn)

        return ws

    # === App lifecycle ===

    def create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get('/catalog', self.handle_catalog)
        app.router.add_get('/sounds', self.handle_catalog)
        app.router.add_get('/sounds/{filename}', self.handle_clip_file)
        app.router.add_get('/settings-info', self.handle_get_settings)
        app.router.add_post('/settings-info', self.handle_post_settings)
        app.router.add_get('/api/remote-info', self.handle_remote_info)
        app.router.add_get('/health', self.handle_health)
        app.router.add_get('/', self.handle_websocket)
        app.router.add_get('/ws', self.handle_websocket)
        return app

    @property
    def local_url(self) -> str:
        return f"http://localhost:{self.config.port}"

    @property
    def remote_url(self) -> str:
        return f"http://{get_lan_ip()}:{self.config.port}"

    async def start(self) -> None:
        """Load settings, bind the listener and print the connection banner.

        Raises:
            CorruptState: the settings file exists but cannot be parsed.
        """
        self.store.load()
        self.catalog.list_names()  # creates the sounds directory if missing

        self._runner = web.AppRunner(self.create_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.config.host, self.config.port)
        await site.start()
        logger.info("Listening on http://%s:%d", self.config.host, self.config.port)

        print("-" * 50)
        print("  Cueboard server started")
        print()
        print("  Playback node URL (this machine):")
        print(f"  {self.local_url}")
        print()
        print("  Remote control URL (phones, tablets):")
        print(f"  {self.remote_url}")
        print("-" * 50)

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
        logger.info("Server stopped")
