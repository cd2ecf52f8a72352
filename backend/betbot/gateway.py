import asyncio
import inspect
import json
import logging
from typing import Awaitable, Callable

import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from betbot import config
from betbot.models import GatewaySettings

log = logging.getLogger(__name__)

AGENT_SEND_METHOD     = "agent.send"
AGENT_RESPONSE_METHOD = "agent.response"

MessageHandler = Callable[[str, bool], Awaitable[None] | None]


# ============================================================
# ERRORS
# ============================================================
class GatewayError(Exception):
    pass


class GatewayConnectionError(GatewayError, ConnectionError):
    """Bad endpoint or failed handshake; no connection was established."""


class TransportError(GatewayError):
    """A send or receive on an open connection failed."""


class EncodingError(GatewayError):
    """An outbound request could not be serialized; nothing was sent."""


# ============================================================
# FRAMING
# ============================================================
def build_agent_request(text: str, agent_id: str, image_base64: str | None = None,
                        media_type: str = "image/jpeg") -> dict:
    params = {"agentId": agent_id, "message": text}
    if image_base64 is not None:
        params["media"] = [{"type": media_type, "data": image_base64}]
    return {"method": AGENT_SEND_METHOD, "params": params}


def decode_agent_frame(raw) -> tuple[str, bool] | None:
    """Returns (text, done) for an agent.response frame, None for anything else."""
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError:
            return None
    try:
        frame = json.loads(raw)
    except (TypeError, ValueError):
        return None
    if not isinstance(frame, dict) or frame.get("method") != AGENT_RESPONSE_METHOD:
        return None
    params = frame.get("params")
    if not isinstance(params, dict):
        return None
    text = params.get("text")
    if not isinstance(text, str):
        return None
    done = params.get("done", False)
    if not isinstance(done, bool):
        return None
    return text, done


# ============================================================
# CLIENT
# ============================================================
class GatewayClient:
    def __init__(self, settings: GatewaySettings | None = None, agent_id: str = config.AGENT_ID):
        self.settings = settings or GatewaySettings.from_env()
        self.agent_id = agent_id
        self.on_message: MessageHandler | None = None
        self.on_closed: Callable[[], None] | None = None
        self.is_connected = False
        self.last_error: str | None = None

        self._ws = None
        self._receive_task: asyncio.Task | None = None
        self._closing = False

    async def connect(self, settings: GatewaySettings | None = None):
        if settings is not None:
            self.settings = settings
        if self._ws is not None:
            return

        url = self.settings.ws_url
        if url is None:
            self.last_error = "Invalid gateway URL"
            raise GatewayConnectionError(f"invalid gateway endpoint {self.settings.host!r}:{self.settings.port!r}")

        headers = {"Authorization": f"Bearer {self.settings.token}"}
        try:
            ws = await websockets.connect(url, additional_headers=headers)
        except (InvalidURI, InvalidHandshake, OSError, asyncio.TimeoutError) as e:
            self.is_connected = False
            self.last_error = str(e) or type(e).__name__
            log.warning(f"[GATEWAY] Connect to {url} failed: {self.last_error}")
            raise GatewayConnectionError(self.last_error) from e

        self._ws = ws
        self._closing = False
        self.is_connected = True
        self.last_error = None
        self._receive_task = asyncio.create_task(self._receive_loop(ws))
        log.info(f"[GATEWAY] Connected to {url}")

    async def disconnect(self):
        ws, task = self._ws, self._receive_task
        if ws is None:
            return
        self._closing = True
        self._ws = None
        self._receive_task = None
        self.is_connected = False
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        try:
            await ws.close()
        except (ConnectionClosed, OSError):
            pass
        log.info("[GATEWAY] Disconnected")

    async def update_settings(self, settings: GatewaySettings):
        self.settings = settings
        if self.is_connected:
            await self.disconnect()
            await self.connect()

    async def send(self, method: str, params: dict):
        try:
            payload = json.dumps({"method": method, "params": params})
        except (TypeError, ValueError) as e:
            self.last_error = "Failed to encode message"
            raise EncodingError(str(e)) from e

        if self._ws is None:
            self.last_error = "Not connected"
            raise TransportError(self.last_error)
        try:
            await self._ws.send(payload)
        except (ConnectionClosed, OSError) as e:
            self.is_connected = False
            self.last_error = str(e) or type(e).__name__
            log.warning(f"[GATEWAY] Send failed: {self.last_error}")
            raise TransportError(self.last_error) from e

    async def send_message(self, text: str, image_base64: str | None = None,
                           media_type: str = "image/jpeg"):
        request = build_agent_request(text, self.agent_id, image_base64, media_type)
        await self.send(request["method"], request["params"])

    async def _receive_loop(self, ws):
        try:
            async for raw in ws:
                decoded = decode_agent_frame(raw)
                if decoded is None:
                    log.debug("[GATEWAY] Dropped non-agent frame")
                    continue
                await self._dispatch(*decoded)
            if not self._closing:
                self.last_error = "Connection closed by gateway"
                log.warning(f"[GATEWAY] {self.last_error}")
        except ConnectionClosed as e:
            if not self._closing:
                self.last_error = str(e) or "connection closed"
                log.warning(f"[GATEWAY] Connection closed: {self.last_error}")
        except OSError as e:
            self.last_error = str(e) or type(e).__name__
            log.error(f"[GATEWAY] Receive failed: {self.last_error}")
        finally:
            if self._ws is ws:
                self._ws = None
                self._receive_task = None
                self.is_connected = False
                if self.on_closed is not None:
                    self.on_closed()

    async def _dispatch(self, text: str, done: bool):
        if self.on_message is None:
            return
        try:
            result = self.on_message(text, done)
            if inspect.isawaitable(result):
                await result
        except Exception:
            log.exception("[GATEWAY] Message handler failed")
