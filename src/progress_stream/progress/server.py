"""
FastAPI WebSocket endpoint for streaming tracker updates.

Each accepted connection gets its own stream thread that holds the
observer attached to its tracker until the peer disconnects.
"""

import asyncio
import concurrent.futures
import logging
import threading
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import APIRouter, FastAPI, WebSocket, status
from fastapi.websockets import WebSocketState

from progress_stream.config import Config, config_manager

from .registry import Registry
from .scope import Scope

logger = logging.getLogger(__name__)


class WebSocketObserver:
    """
    Blocking observer connection over an async WebSocket.

    Trackers call send_json/close from worker threads; the calls are
    handed to the event loop that owns the socket and waited on for at
    most send_timeout seconds. Calls made on the loop thread itself are
    scheduled instead; if such a send fails, the observer marks itself
    closed so the tracker drops it on its next broadcast.
    """

    def __init__(
        self,
        websocket: WebSocket,
        loop: asyncio.AbstractEventLoop,
        send_timeout: float = 5.0,
    ):
        self.websocket = websocket
        self._loop = loop
        self._send_timeout = send_timeout
        self._closed = False
        self._pending: set[asyncio.Task] = set()

    @property
    def closed(self) -> bool:
        return self._closed

    def _on_loop_thread(self) -> bool:
        try:
            return asyncio.get_running_loop() is self._loop
        except RuntimeError:
            return False

    def _schedule(self, coro) -> asyncio.Task:
        task = self._loop.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    def send_json(self, message: dict[str, Any]) -> None:
        if self._closed:
            raise RuntimeError("observer connection is closed")
        if self._on_loop_thread():
            task = self._schedule(self.websocket.send_json(message))
            task.add_done_callback(self._on_scheduled_send)
            return
        future = asyncio.run_coroutine_threadsafe(
            self.websocket.send_json(message), self._loop
        )
        try:
            future.result(timeout=self._send_timeout)
        except concurrent.futures.TimeoutError:
            future.cancel()
            raise

    def _on_scheduled_send(self, task: asyncio.Task) -> None:
        if task.cancelled() or task.exception() is None:
            return
        logger.debug(f"Scheduled send to WebSocket observer failed: {task.exception()}")
        if not self._closed:
            self._closed = True
            self._schedule(self._close_socket())

    async def _close_socket(self) -> None:
        try:
            await self.websocket.close()
        except Exception as e:
            logger.debug(f"Error closing WebSocket observer: {e}")

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if (
            self.websocket.application_state == WebSocketState.DISCONNECTED
            or self.websocket.client_state == WebSocketState.DISCONNECTED
        ):
            return
        if self._on_loop_thread():
            self._schedule(self._close_socket())
            return
        try:
            future = asyncio.run_coroutine_threadsafe(self._close_socket(), self._loop)
            future.result(timeout=self._send_timeout)
        except Exception as e:
            logger.debug(f"Error closing WebSocket observer: {e}")


async def _wait_for_disconnect(websocket: WebSocket) -> None:
    """Drain inbound frames until the peer goes away."""
    while True:
        try:
            message = await websocket.receive()
        except RuntimeError:
            return
        if message["type"] == "websocket.disconnect":
            return


def _settle(finished: asyncio.Future, error: Optional[BaseException]) -> None:
    if finished.done():
        return
    if error is None:
        finished.set_result(None)
    else:
        finished.set_exception(error)


def _start_stream_thread(
    registry: Registry,
    scope: Scope,
    observer: WebSocketObserver,
    progress_id: str,
    loop: asyncio.AbstractEventLoop,
) -> asyncio.Future:
    """Run registry.stream on a fresh daemon thread; the future resolves when it returns."""
    finished = loop.create_future()

    def run():
        error = None
        try:
            registry.stream(scope, observer, progress_id)
        except Exception as e:
            error = e
        finally:
            try:
                loop.call_soon_threadsafe(_settle, finished, error)
            except RuntimeError:
                logger.debug(f"Event loop gone before stream {progress_id} finished")

    threading.Thread(
        target=run,
        name=f"progress-stream-{progress_id}",
        daemon=True,
    ).start()
    return finished


def create_router(
    registry: Registry,
    config: Optional[Config] = None,
) -> APIRouter:
    """Router exposing the progress stream WebSocket route."""
    if config is None:
        config = config_manager.config
    send_timeout = config.progress.send_timeout
    max_streams = config.server.max_streams
    active_streams = 0
    router = APIRouter()

    @router.websocket(config.server.route_path)
    async def stream_progress(websocket: WebSocket, progress_id: str):
        nonlocal active_streams
        try:
            await websocket.accept()
        except Exception as e:
            logger.warning(f"WebSocket upgrade failed for progress {progress_id}: {e}")
            return

        if active_streams >= max_streams:
            logger.warning(
                f"Rejecting observer of {progress_id}: {active_streams} streams already open"
            )
            await websocket.close(code=status.WS_1013_TRY_AGAIN_LATER)
            return

        loop = asyncio.get_running_loop()
        scope = Scope()
        observer = WebSocketObserver(websocket, loop, send_timeout=send_timeout)

        active_streams += 1
        try:
            stream = _start_stream_thread(registry, scope, observer, progress_id, loop)
            receiver = asyncio.ensure_future(_wait_for_disconnect(websocket))
            try:
                await asyncio.wait({stream, receiver}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                scope.cancel()
                receiver.cancel()
                await asyncio.gather(receiver, return_exceptions=True)
                await stream
        finally:
            active_streams -= 1

    return router


def create_app(
    registry: Optional[Registry] = None,
    config: Optional[Config] = None,
) -> FastAPI:
    """FastAPI application serving the progress stream for `registry`."""
    if config is None:
        config = config_manager.config
    if registry is None:
        registry = Registry.from_config(config.progress)

    app = FastAPI(title="progress-stream")
    app.state.registry = registry
    app.include_router(create_router(registry, config))
    return app


class ProgressServer:
    """
    Runs the progress app under uvicorn as a background task.

    Usage:
        registry = Registry()
        server = ProgressServer(registry)
        await server.start()
        # ... create trackers, update them ...
        await server.stop()
    """

    def __init__(
        self,
        registry: Registry,
        config: Optional[Config] = None,
    ):
        self.registry = registry
        self.config = config if config is not None else config_manager.config
        self.app = create_app(registry, self.config)

        self._server = None
        self._serve_task: Optional[asyncio.Task] = None
        self._sweep_task: Optional[asyncio.Task] = None

    @property
    def url(self) -> str:
        return f"ws://{self.config.server.host}:{self.config.server.port}"

    async def _sweep_forever(self, ttl: float, interval: float):
        """Periodically delete idle trackers."""
        while True:
            await asyncio.sleep(interval)
            self.registry.sweep(ttl)

    async def start(self, startup_timeout: float = 10.0):
        """Start the server (and the idle tracker sweep, if configured)."""
        import uvicorn

        uv_config = uvicorn.Config(
            self.app,
            host=self.config.server.host,
            port=self.config.server.port,
            log_level="warning",
        )
        self._server = uvicorn.Server(uv_config)
        self._serve_task = asyncio.create_task(self._server.serve())

        loop = asyncio.get_running_loop()
        give_up_at = loop.time() + startup_timeout
        while not self._server.started:
            if self._serve_task.done():
                await self._serve_task
                raise RuntimeError(f"Progress server exited during startup on {self.url}")
            if loop.time() >= give_up_at:
                await self.stop()
                raise RuntimeError(f"Progress server did not start within {startup_timeout}s")
            await asyncio.sleep(0.02)

        ttl = self.config.progress.tracker_ttl
        if ttl is not None:
            self._sweep_task = asyncio.create_task(
                self._sweep_forever(ttl, self.config.progress.sweep_interval)
            )
        logger.info(f"Progress server listening on {self.url}")

    async def stop(self):
        """Stop the server gracefully."""
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass

        if self._server:
            self._server.should_exit = True

        if self._serve_task:
            try:
                await asyncio.wait_for(self._serve_task, timeout=2.0)
            except asyncio.TimeoutError:
                self._serve_task.cancel()
                try:
                    await self._serve_task
                except asyncio.CancelledError:
                    pass
        logger.info("Progress server stopped")


@asynccontextmanager
async def progress_server(
    registry: Registry,
    config: Optional[Config] = None,
):
    """
    Context manager for running the progress server.

    Usage:
        async with progress_server(registry) as server:
            tracker = registry.create()
            ...
        # Server auto-stops when context exits
    """
    server = ProgressServer(registry, config=config)
    await server.start()
    try:
        yield server
    finally:
        await server.stop()
