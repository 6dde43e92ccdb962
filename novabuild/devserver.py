"""
Development server.

Serves the dist root, exposes the current manifest, and pushes a reload
signal over a websocket after every manifest publish.

Usage:
    novabuild build --mode=development
"""
import asyncio
import logging
import threading
from pathlib import Path
from typing import List, Optional, Tuple

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel
import uvicorn

from novabuild.loader import LIVERELOAD_PATH
from novabuild.manifest import OutputManifest


logger = logging.getLogger(__name__)


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    manifest_version: int


class LiveReloadHub:
    """
    Connected live-reload clients.

    notify() is called from the build thread; sends are scheduled on the
    event loop that owns each websocket.
    """

    def __init__(self):
        self._clients: List[Tuple[asyncio.AbstractEventLoop, WebSocket]] = []
        self._lock = threading.Lock()

    @property
    def client_count(self) -> int:
        with self._lock:
            return len(self._clients)

    def register(self, loop: asyncio.AbstractEventLoop, websocket: WebSocket):
        with self._lock:
            self._clients.append((loop, websocket))

    def unregister(self, websocket: WebSocket):
        with self._lock:
            self._clients = [(l, ws) for l, ws in self._clients if ws is not websocket]

    def notify(self, manifest: OutputManifest):
        """Push a reload signal for a newly published manifest."""
        message = {"type": "reload", "version": manifest.version}

        with self._lock:
            clients = list(self._clients)

        for loop, websocket in clients:
            if loop.is_closed():
                self.unregister(websocket)
                continue
            asyncio.run_coroutine_threadsafe(self._send(websocket, message), loop)

        logger.debug(f"Reload v{manifest.version} pushed to {len(clients)} client(s)")

    async def _send(self, websocket: WebSocket, message: dict):
        try:
            await websocket.send_json(message)
        except Exception as e:
            logger.debug(f"Dropping live-reload client: {e}")
            self.unregister(websocket)


def create_app(manifest: OutputManifest, static_root: Path, hub: Optional[LiveReloadHub] = None) -> FastAPI:
    """
    Build the dev server application.

    Args:
        manifest: Manifest whose publishes trigger reloads
        static_root: Dist root served as static files
        hub: Live-reload hub (created and subscribed when omitted)

    Returns:
        FastAPI application
    """
    if hub is None:
        hub = LiveReloadHub()
        manifest.subscribe(hub.notify)

    app = FastAPI(title="novabuild dev server")
    app.state.hub = hub
    app.state.manifest = manifest

    @app.get("/healthz", response_model=HealthResponse)
    async def healthz():
        return HealthResponse(status="ok", manifest_version=manifest.version)

    @app.get("/manifest.json")
    async def manifest_json():
        return JSONResponse(manifest.to_dict())

    @app.websocket(LIVERELOAD_PATH)
    async def livereload(websocket: WebSocket):
        # Registered before accept so no publish can slip between the two
        hub.register(asyncio.get_running_loop(), websocket)
        try:
            await websocket.accept()
            await websocket.send_json({"type": "hello", "version": manifest.version})
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            hub.unregister(websocket)

    static_root = Path(static_root)
    static_root.mkdir(parents=True, exist_ok=True)
    app.mount("/", StaticFiles(directory=str(static_root), html=True), name="static")

    return app


class DevServer:
    """uvicorn server running in a background thread."""

    def __init__(self, app: FastAPI, host: str = "127.0.0.1", port: int = 9000):
        self.host = host
        self.port = port
        self.server = uvicorn.Server(uvicorn.Config(app, host=host, port=port, log_level="warning"))
        self.thread: Optional[threading.Thread] = None

    def start(self):
        self.thread = threading.Thread(target=self.server.run, name="novabuild-devserver", daemon=True)
        self.thread.start()
        logger.info(f"Dev server listening on http://{self.host}:{self.port}")

    def stop(self):
        self.server.should_exit = True
        if self.thread is not None:
            self.thread.join(timeout=5)
