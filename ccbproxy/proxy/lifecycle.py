from __future__ import annotations

import asyncio
import contextlib
import errno
import logging
import socket
import sys
import time
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional

import httpx
import uvicorn

from .config_manager import ProviderRegistry
from .errors import GatewayError, GatewayStartError, PortInUseError
from .events import EventChannel
from .main import create_app
from .models import ManagedModeConfig
from .runtime import GatewayService

GRACEFUL_SHUTDOWN_SECONDS = 5
STARTUP_TIMEOUT_SECONDS = 10.0

logger = logging.getLogger(__name__)


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves process signals to whoever embeds it."""

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield

    def install_signal_handlers(self) -> None:
        pass


def _is_addr_in_use(exc: OSError) -> bool:
    return exc.errno == errno.EADDRINUSE or getattr(exc, "winerror", None) == 10048


class LifecycleController:
    """Starts, stops and restarts one embedded gateway instance."""

    def __init__(
        self,
        registry: Optional[ProviderRegistry] = None,
        channel: Optional[EventChannel] = None,
        host: str = "127.0.0.1",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._registry = registry or ProviderRegistry()
        self._channel = channel or EventChannel()
        self._host = host
        self._transport = transport
        self._service: Optional[GatewayService] = None
        self._server: Optional[_EmbeddedServer] = None
        self._task: Optional[asyncio.Task] = None
        self._socket: Optional[socket.socket] = None
        self._port: Optional[int] = None
        self._lock = asyncio.Lock()

    @property
    def channel(self) -> EventChannel:
        return self._channel

    @property
    def registry(self) -> ProviderRegistry:
        return self._registry

    @property
    def service(self) -> Optional[GatewayService]:
        return self._service

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def port(self) -> Optional[int]:
        return self._port if self.running else None

    @property
    def url(self) -> Optional[str]:
        if not self.running:
            return None
        return f"http://{self._host}:{self._port}"

    async def start(self, config: ManagedModeConfig) -> None:
        async with self._lock:
            await self._start(config)

    async def stop(self) -> None:
        async with self._lock:
            await self._stop()

    async def restart(self, config: ManagedModeConfig) -> None:
        async with self._lock:
            await self._stop()
            await self._start(config)

    async def reload(self) -> None:
        config = self._registry.load()
        logger.info("reloading gateway from %s", self._registry.config_path)
        await self.restart(config)

    async def _start(self, config: ManagedModeConfig) -> None:
        if self.running:
            raise GatewayStartError(f"Gateway is already running on port {self._port}")
        port = config.port
        self._channel.status("starting", state="starting", port=port)
        try:
            service = GatewayService(
                config,
                transformers=self._registry.transformers,
                channel=self._channel,
                transport=self._transport,
            )
        except GatewayError as exc:
            self._failed(exc)
            raise

        try:
            sock = self._bind(port)
        except GatewayStartError as exc:
            await service.shutdown()
            self._failed(exc)
            raise

        server = _EmbeddedServer(
            uvicorn.Config(
                create_app(service),
                host=self._host,
                port=port,
                log_config=None,
                access_log=False,
                lifespan="off",
                timeout_graceful_shutdown=GRACEFUL_SHUTDOWN_SECONDS,
            )
        )
        task = asyncio.create_task(server.serve(sockets=[sock]))
        deadline = time.monotonic() + STARTUP_TIMEOUT_SECONDS
        while not server.started:
            if task.done() or time.monotonic() > deadline:
                server.should_exit = True
                try:
                    await task
                except Exception:
                    logger.exception("gateway server task failed during startup")
                sock.close()
                await service.shutdown()
                exc = GatewayStartError(f"Gateway on {self._host}:{port} did not start")
                self._failed(exc)
                raise exc
            await asyncio.sleep(0.05)

        self._service = service
        self._server = server
        self._task = task
        self._socket = sock
        self._port = port
        provider = config.find_provider(config.current_provider_id)
        logger.info(
            "gateway listening on http://%s:%s (provider=%s)",
            self._host,
            port,
            provider.name if provider else None,
        )
        self._channel.status(
            "running",
            state="running",
            port=port,
            provider=provider.name if provider else None,
        )

    async def _stop(self) -> None:
        if self._task is None:
            return
        server, task, service, sock = self._server, self._task, self._service, self._socket
        self._server = self._task = self._service = self._socket = None
        self._port = None
        server.should_exit = True
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=GRACEFUL_SHUTDOWN_SECONDS + 5)
        except asyncio.TimeoutError:
            logger.warning("gateway did not drain in time; forcing exit")
            server.force_exit = True
            await task
        finally:
            if sock is not None:
                sock.close()
            if service is not None:
                await service.shutdown()
        logger.info("gateway stopped")
        self._channel.status("stopped", state="stopped")

    def _bind(self, port: int) -> socket.socket:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        if sys.platform != "win32":
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((self._host, port))
            sock.listen(socket.SOMAXCONN)
        except OverflowError as exc:
            sock.close()
            raise GatewayStartError(f"Cannot listen on {self._host}:{port}: {exc}") from exc
        except OSError as exc:
            sock.close()
            if _is_addr_in_use(exc):
                raise PortInUseError(port) from exc
            raise GatewayStartError(f"Cannot listen on {self._host}:{port}: {exc.strerror or exc}") from exc
        sock.setblocking(False)
        return sock

    def _failed(self, exc: GatewayError) -> None:
        logger.error("gateway failed to start: %s", exc.message)
        self._channel.status("failed", level="error", state="failed", error=exc.message)

    def status(self) -> Dict[str, Any]:
        service = self._service
        if not self.running or service is None:
            return {"running": False, "port": None, "provider": None, "apiKey": None, "startedAt": None, "uptime": 0}
        config = service.config
        provider = config.find_provider(config.current_provider_id)
        return {
            "running": True,
            "port": self._port,
            "provider": provider.name if provider else None,
            "apiKey": provider.masked_api_key if provider else None,
            "startedAt": datetime.fromtimestamp(service.started_at, tz=timezone.utc).isoformat(),
            "uptime": int(time.time() - service.started_at),
        }
