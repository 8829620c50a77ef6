"""
Session with the remote dice service.

Handshake over HTTP, then a long-lived server-sent-event stream. On failure
the manager retries with a linear backoff until it runs out of attempts, is
told it is not authorized, or has no session token left to present.

All state lives on the event loop; callbacks are plain synchronous callables.
Callers that need the retry chain to settle (shutdown code, tests) await
`ConnectionManager.wait_for_reconnects()`.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, Optional

import httpx

from backend.config import RelayConfig
from backend.relay.parser import ROLL_FULFILLED

logger = logging.getLogger(__name__)

KEEPALIVE_PAYLOADS = {"ping", "pong"}


class ConnectionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass
class ConnectionSession:
    session_id: Optional[str] = None
    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    reconnect_attempts: int = 0
    reconnect_timer: Optional[asyncio.Task] = None


class HandshakeError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def _json_object(response: httpx.Response) -> Optional[Dict[str, Any]]:
    """The response body when it is a JSON object, else None."""
    try:
        body = response.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


async def iter_sse_data(lines: AsyncIterator[str]) -> AsyncIterator[str]:
    """Yield the joined `data:` payload of every blank-line terminated event."""
    buffer = []
    async for line in lines:
        line = line.rstrip("\r")
        if not line:
            if buffer:
                yield "\n".join(buffer)
                buffer = []
            continue
        if line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "data":
            buffer.append(value)
    if buffer:
        yield "\n".join(buffer)


class ConnectionManager:
    """
    Owns the one session with the remote service.

    Args:
        config: relay configuration (credentials, delays, caps).
        on_roll_event: called with every `dice/roll/fulfilled` payload.
        on_status_change: called with the new ConnectionStatus on transitions.
        on_notification: called with (level, message) for user-facing notices.
        transport: optional httpx transport (tests use httpx.MockTransport).
        sleep: coroutine used to wait between reconnects.
        authorization_check: returns False when the account may not use the
            relay; checked before every reconnect.
        token_provider: returns the current session token; defaults to the
            configured one.
    """

    def __init__(
        self,
        config: RelayConfig,
        on_roll_event: Optional[Callable[[Dict[str, Any]], None]] = None,
        on_status_change: Optional[Callable[[ConnectionStatus], None]] = None,
        on_notification: Optional[Callable[[str, str], None]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep=asyncio.sleep,
        authorization_check: Optional[Callable[[], bool]] = None,
        token_provider: Optional[Callable[[], Optional[str]]] = None,
    ):
        self.config = config
        self.on_roll_event = on_roll_event
        self.on_status_change = on_status_change
        self.on_notification = on_notification
        self.transport = transport
        self._sleep = sleep
        self.authorization_check = authorization_check
        self.token_provider = token_provider

        self.session = ConnectionSession()
        self._client: Optional[httpx.AsyncClient] = None
        self._response: Optional[httpx.Response] = None
        self._reader: Optional[asyncio.Task] = None
        self._authorized = True
        # Bumped by disconnect(); in-flight connects and readers compare against it
        self._generation = 0

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def status(self) -> ConnectionStatus:
        return self.session.status

    @property
    def session_id(self) -> Optional[str]:
        return self.session.session_id

    @property
    def reconnect_attempts(self) -> int:
        return self.session.reconnect_attempts

    @property
    def is_connected(self) -> bool:
        return self.session.status == ConnectionStatus.CONNECTED

    def snapshot(self) -> Dict[str, Any]:
        return {
            "status": self.session.status.value,
            "session_id": self.session.session_id,
            "reconnect_attempts": self.session.reconnect_attempts,
            "max_reconnect_attempts": self.config.max_reconnect_attempts,
            "reconnect_pending": self.session.reconnect_timer is not None,
            "authorized": self._authorized,
            "base_url": self.config.base_url,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> bool:
        """Open a session unless one is open or opening. Returns True on success."""
        if self.session.status in (ConnectionStatus.CONNECTING, ConnectionStatus.CONNECTED):
            logger.debug(f"connect() ignored while {self.session.status.value}")
            return False

        if not self.config.is_valid:
            logger.warning("⚠️ Relay configuration incomplete (campaign id, user id and credential are required)")
            self._notify("warning", "Dice relay is not configured")
            return False

        # Claimed before the first await so concurrent callers see CONNECTING
        self._set_status(ConnectionStatus.CONNECTING)
        generation = self._generation

        try:
            self._client = httpx.AsyncClient(
                base_url=self.config.base_url,
                timeout=httpx.Timeout(self.config.request_timeout, read=None),
                transport=self.transport,
            )
            session_id = await self._handshake()
            response = await self._open_stream(session_id)
        except Exception as e:
            if generation != self._generation:
                return False
            status_code = getattr(e, "status_code", None)
            if status_code in (401, 403):
                self._authorized = False
            logger.error(f"❌ Relay connection failed: {e}", extra={"session_id": self.session.session_id})
            await self._teardown()
            self._set_status(ConnectionStatus.DISCONNECTED)
            self._schedule_reconnect()
            return False

        if generation != self._generation:
            # disconnect() ran while we were connecting
            await response.aclose()
            return False

        self._response = response
        self.session.session_id = session_id
        self.session.reconnect_attempts = 0
        self._set_status(ConnectionStatus.CONNECTED)
        self._reader = asyncio.create_task(self._read_stream(response, generation))
        logger.info(f"✅ Relay connected (session {session_id})", extra={"session_id": session_id})
        self._notify("info", "Connected to the dice service")
        return True

    async def disconnect(self):
        """Close everything and stay down. Safe to call at any time."""
        self._generation += 1
        self._cancel_timer()
        await self._teardown()
        if self.session.session_id:
            logger.info(f"Relay session {self.session.session_id} closed",
                        extra={"session_id": self.session.session_id})
        self.session.session_id = None
        self._set_status(ConnectionStatus.DISCONNECTED)

    async def reconnect(self) -> bool:
        """Manual reconnect: fresh attempt counter, authorization re-checked by the handshake."""
        await self.disconnect()
        self.session.reconnect_attempts = 0
        self._authorized = True
        return await self.connect()

    async def wait_for_reconnects(self):
        """Wait until the automatic reconnect chain settles: connected again, or stopped for good."""
        while self.session.reconnect_timer is not None:
            timer = self.session.reconnect_timer
            await asyncio.wait({timer})
            if self.session.reconnect_timer is timer:
                self.session.reconnect_timer = None

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    def _token(self) -> Optional[str]:
        if self.token_provider:
            return self.token_provider()
        return self.config.session_token or None

    async def _handshake(self) -> str:
        token = self._token()
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        response = await self._client.post(
            "/connect",
            json={
                "gameId": self.config.campaign_id,
                "userId": self.config.user_id,
                "credential": self.config.credential,
            },
            headers=headers,
        )

        body = _json_object(response)
        if response.status_code >= 400:
            error = body.get("error") if body is not None else response.text
            raise HandshakeError(f"Handshake rejected ({response.status_code}): {error}", response.status_code)

        session_id = body.get("sessionId") if body is not None else None
        if not session_id:
            raise HandshakeError("Handshake response has no sessionId", response.status_code)
        return str(session_id)

    async def _open_stream(self, session_id: str) -> httpx.Response:
        request = self._client.build_request(
            "GET", f"/events/{session_id}", params={"token": self._token() or ""}
        )
        response = await self._client.send(request, stream=True)
        if response.status_code >= 400:
            await response.aread()
            await response.aclose()
            raise HandshakeError(f"Event stream rejected ({response.status_code})", response.status_code)
        return response

    async def _teardown(self):
        if self._reader and self._reader is not asyncio.current_task():
            self._reader.cancel()
        self._reader = None

        if self._response is not None:
            await self._response.aclose()
            self._response = None
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # ------------------------------------------------------------------
    # Stream
    # ------------------------------------------------------------------

    async def _read_stream(self, response: httpx.Response, generation: int):
        try:
            async for data in iter_sse_data(response.aiter_lines()):
                self._handle_message(data)
            logger.warning("Relay event stream ended", extra={"session_id": self.session.session_id})
        except httpx.HTTPError as e:
            logger.warning(f"Relay event stream error: {e}", extra={"session_id": self.session.session_id})
        except Exception as e:
            logger.error(f"❌ Relay event reader failed: {e}", exc_info=True,
                         extra={"session_id": self.session.session_id})

        if generation != self._generation:
            return
        await self._teardown()
        self.session.session_id = None
        self._set_status(ConnectionStatus.DISCONNECTED)
        self._schedule_reconnect()

    def _handle_message(self, data: str):
        text = data.strip()
        if not text or text in KEEPALIVE_PAYLOADS:
            return

        try:
            message = json.loads(text)
        except json.JSONDecodeError as e:
            logger.warning(f"Dropping malformed relay message: {e}")
            return

        if not isinstance(message, dict) or message.get("type") in KEEPALIVE_PAYLOADS:
            return

        if message.get("eventType") == ROLL_FULFILLED and self.on_roll_event:
            try:
                self.on_roll_event(message)
            except Exception as e:
                logger.error(f"❌ Roll event handler failed: {e}", exc_info=True)

    # ------------------------------------------------------------------
    # Reconnection
    # ------------------------------------------------------------------

    def _schedule_reconnect(self):
        if self.authorization_check is not None and not self.authorization_check():
            self._authorized = False

        if not self._authorized:
            logger.error("🚫 Relay access not authorized; automatic reconnection stopped")
            self._notify("error", "Not authorized to use the dice relay. Reconnection stopped.")
            return

        if not self._token():
            logger.error("No session token available; automatic reconnection stopped")
            self._notify("error", "No session token available. Reconnection stopped.")
            return

        if self.session.reconnect_attempts >= self.config.max_reconnect_attempts:
            logger.error(f"Relay gave up after {self.session.reconnect_attempts} reconnect attempts")
            self._notify("error", "Could not reconnect to the dice service. Use reconnect to try again.")
            return

        self.session.reconnect_attempts += 1
        delay = self.config.reconnect_delay * self.session.reconnect_attempts
        self._cancel_timer()
        self.session.reconnect_timer = asyncio.create_task(self._reconnect_after(delay))
        logger.info(
            f"🔄 Reconnecting in {delay:g}s "
            f"(attempt {self.session.reconnect_attempts}/{self.config.max_reconnect_attempts})"
        )
        self._notify("warning", f"Connection lost. Reconnecting in {delay:g}s...")

    async def _reconnect_after(self, delay: float):
        await self._sleep(delay)
        self.session.reconnect_timer = None
        await self.connect()

    def _cancel_timer(self):
        timer = self.session.reconnect_timer
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()
        self.session.reconnect_timer = None

    # ------------------------------------------------------------------
    # Callbacks
    # ------------------------------------------------------------------

    def _set_status(self, status: ConnectionStatus):
        if status == self.session.status:
            return
        self.session.status = status
        if self.on_status_change:
            self.on_status_change(status)

    def _notify(self, level: str, message: str):
        if self.on_notification:
            self.on_notification(level, message)
