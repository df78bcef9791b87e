from __future__ import annotations

import asyncio
import json
import logging
import signal
from typing import Any

import websockets
from pydantic import ValidationError

from .requests import parse_request
from .scheduler import AsyncioScheduler
from .service import ImportService


LOGGER = logging.getLogger(__name__)


class ImportServer:
    """JSON-over-WebSocket front for ``ImportService`` plus the periodic trigger."""

    def __init__(
        self,
        service: ImportService,
        *,
        host: str,
        port: int,
        schedule_interval_sec: float | None = None,
        scheduler: AsyncioScheduler | None = None,
    ):
        self.service = service
        self.host = host
        self.port = port
        self.schedule_interval_sec = schedule_interval_sec
        self.scheduler = scheduler or AsyncioScheduler()
        self._stop_event = asyncio.Event()

    async def handle_message(self, message: str | bytes) -> dict[str, Any]:
        try:
            payload = json.loads(message)
            if not isinstance(payload, dict):
                raise ValueError("Request must be a JSON object.")
            request = parse_request(payload)
        except (json.JSONDecodeError, ValidationError, ValueError) as exc:
            LOGGER.warning("Invalid client message: %s", exc)
            return {
                "success": False,
                "error": {"kind": "validation", "message": f"Invalid request payload: {exc}"},
            }
        return await self.service.dispatch(request)

    async def _handle_client(self, websocket: Any) -> None:
        LOGGER.info("WebSocket client connected: %s", getattr(websocket, "remote_address", None))
        async for message in websocket:
            response = await self.handle_message(message)
            await websocket.send(json.dumps(response, ensure_ascii=False))
        LOGGER.info("WebSocket client disconnected: %s", getattr(websocket, "remote_address", None))

    def request_stop(self) -> None:
        self._stop_event.set()

    def _install_signal_handlers(self) -> list[signal.Signals]:
        loop = asyncio.get_running_loop()
        installed: list[signal.Signals] = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop)
            except (NotImplementedError, RuntimeError):
                LOGGER.debug("Signal handler not supported here: %s", sig.name)
                continue
            installed.append(sig)
        return installed

    async def _purge_expired(self) -> None:
        self.service.purge_expired()

    async def run(self) -> None:
        orchestrator = self.service.orchestrator
        installed = self._install_signal_handlers()
        try:
            adopted = await orchestrator.run_scheduled()
            if adopted is not None:
                LOGGER.info("Startup scheduled run: batch_id=%s type=%s", adopted.batch_id, adopted.batch_type)
            if self.schedule_interval_sec:
                self.scheduler.every(self.schedule_interval_sec, orchestrator.run_scheduled, name="run_scheduled")
                self.scheduler.every(self.schedule_interval_sec, self._purge_expired, name="purge_expired")

            LOGGER.info("WebSocket server listening on ws://%s:%s", self.host, self.port)
            async with websockets.serve(self._handle_client, self.host, self.port):
                await self._stop_event.wait()
        finally:
            loop = asyncio.get_running_loop()
            for sig in installed:
                loop.remove_signal_handler(sig)
            LOGGER.info("Server stop requested")
            await self.stop()

    async def stop(self) -> None:
        await self.scheduler.stop()
        await self.service.orchestrator.aclose()
        await self.service.client.aclose()
