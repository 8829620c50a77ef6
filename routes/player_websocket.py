"""
Player WebSocket channel for the roll relay.

Handles:
- Presence (which players have a live client)
- Roll execution requests to the owning player's client, and their answers
- Relay status and notification broadcasts
"""

import asyncio
import logging
import uuid
from typing import Any, Dict, List, Set, Tuple

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from backend.auth.jwt import verify_player_token
from backend.relay.connection import ConnectionStatus
from backend.relay.schemas import RollOutcome
from backend.relay.service import RelayObserver
from routes.schemas.relay import (
    ExecuteRollRequest,
    ExecuteRollResult,
    RelayNotification,
    RelayStatusBroadcast,
    RollRelayedBroadcast,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/relay", tags=["Relay"])

# ============================================================================
# CONNECTION MANAGER (Tracks player clients and pending roll requests)
# ============================================================================

class PlayerConnectionManager:
    """Manages player WebSocket connections and roll execution requests."""

    def __init__(self):
        # user_id → list of (websocket, username)
        self.active_connections: Dict[str, List[Tuple[WebSocket, str]]] = {}
        # request_id → (user_id, future resolved with the player's answer)
        self.pending_requests: Dict[str, Tuple[str, asyncio.Future]] = {}

    async def connect(self, websocket: WebSocket, user_id: str, username: str):
        """Accept WebSocket connection and register the player."""
        await websocket.accept()
        self.active_connections.setdefault(user_id, []).append((websocket, username))
        logger.info(f"Player {username} ({user_id}) connected to the relay channel")

    def disconnect(self, websocket: WebSocket):
        """Remove a connection; requests waiting on a now-offline player fail."""
        for user_id, connections in list(self.active_connections.items()):
            for conn in connections:
                if conn[0] == websocket:
                    connections.remove(conn)
                    logger.info(f"Player {conn[1]} disconnected from the relay channel")
                    if not connections:
                        del self.active_connections[user_id]
                        self._fail_pending(user_id)
                    return conn[1]
        return None

    def is_online(self, user_id: str) -> bool:
        return bool(self.active_connections.get(str(user_id)))

    def get_connected_users(self) -> List[str]:
        return list(self.active_connections.keys())

    async def broadcast(self, message: dict):
        """Send message to every connected player."""
        disconnected = []
        for user_id, connections in self.active_connections.items():
            for websocket, username in connections:
                try:
                    await websocket.send_json(message)
                except Exception as e:
                    logger.warning(f"Failed to send to {username}: {e}")
                    disconnected.append(websocket)

        # Clean up dead connections
        for websocket in disconnected:
            self.disconnect(websocket)

    async def send_to_user(self, user_id: str, message: dict) -> bool:
        """Send message to the first live connection of a player."""
        for websocket, username in self.active_connections.get(str(user_id), []):
            try:
                await websocket.send_json(message)
                return True
            except Exception as e:
                logger.warning(f"Failed to send to {username}: {e}")
        return False

    async def request_roll_execution(self, user_id: str, payload: Dict[str, Any]) -> bool:
        """
        Ask the player's client to execute a roll and wait for its answer.

        The caller bounds the wait (asyncio.wait_for); the pending entry is
        removed however the wait ends.
        """
        request_id = str(uuid.uuid4())
        future = asyncio.get_running_loop().create_future()
        self.pending_requests[request_id] = (str(user_id), future)

        try:
            request = ExecuteRollRequest(request_id=request_id, **payload)
            if not await self.send_to_user(user_id, request.model_dump(mode='json', by_alias=True)):
                return False
            return bool(await future)
        finally:
            self.pending_requests.pop(request_id, None)

    def resolve(self, request_id: str, success: bool, user_id: str) -> bool:
        """Deliver a player's answer. Answers from anyone but the asked player are ignored."""
        entry = self.pending_requests.get(request_id)
        if entry is None:
            logger.warning(f"Answer for unknown roll request {request_id}")
            return False
        owner_id, future = entry
        if owner_id != str(user_id):
            logger.warning(f"Player {user_id} answered roll request {request_id} addressed to {owner_id}")
            return False
        if not future.done():
            future.set_result(success)
        return True

    def _fail_pending(self, user_id: str):
        for owner_id, future in self.pending_requests.values():
            if owner_id == user_id and not future.done():
                future.set_result(False)


class WebSocketObserver(RelayObserver):
    """Pushes relay events to every connected player client."""

    def __init__(self, manager: PlayerConnectionManager):
        self.manager = manager
        self._tasks: Set[asyncio.Task] = set()

    def _send(self, message: dict):
        task = asyncio.get_running_loop().create_task(self.manager.broadcast(message))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def on_status_change(self, status: ConnectionStatus):
        self._send(RelayStatusBroadcast(status=status.value).model_dump(mode='json'))

    def on_notification(self, level: str, message: str):
        self._send(RelayNotification(level=level, message=message).model_dump(mode='json'))

    def on_roll_processed(self, outcome: RollOutcome):
        self._send(RollRelayedBroadcast(
            action=outcome.event.action,
            character_name=outcome.event.character_name,
            total=outcome.event.total,
            tier=outcome.tier.value,
            message_id=outcome.message_id,
        ).model_dump(mode='json'))


# Global connection manager instance
manager = PlayerConnectionManager()


# ============================================================================
# WEBSOCKET ENDPOINT
# ============================================================================

@router.websocket("/ws")
async def relay_websocket(
    websocket: WebSocket,
    token: str = Query(...),  # Player JWT passed as query param
):
    """
    WebSocket endpoint for player clients.

    URL: ws://localhost:8000/api/relay/ws?token={jwt_token}

    Server → client: execute_roll, relay_status, relay_notification, roll_relayed
    Client → server: execute_roll_result, ping
    """
    # ===== JWT AUTHENTICATION (BEFORE accepting WebSocket) =====
    token_data = verify_player_token(token)
    if not token_data:
        await websocket.close(code=1008, reason="Invalid or expired token")
        return

    await manager.connect(websocket, token_data.user_id, token_data.username)

    try:
        while True:
            data = await websocket.receive_json()
            message_type = data.get("type")

            if message_type == "execute_roll_result":
                try:
                    result = ExecuteRollResult.model_validate(data)
                except ValidationError as e:
                    await websocket.send_json({"type": "error", "message": f"Invalid result: {e.errors()}"})
                    continue
                manager.resolve(result.request_id, result.success, token_data.user_id)

            elif message_type == "ping":
                await websocket.send_json({"type": "pong"})

            else:
                await websocket.send_json({"type": "error", "message": f"Unknown message type: {message_type}"})

    except WebSocketDisconnect:
        manager.disconnect(websocket)
    except Exception as e:
        logger.error(f"WebSocket error for {token_data.username}: {e}")
        manager.disconnect(websocket)
