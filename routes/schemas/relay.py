"""
Pydantic schemas for the relay API and the player WebSocket channel.
"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from backend.config import RollOwnership


# ============================================================================
# PLAYER CHANNEL (Server ↔ Player client)
# ============================================================================

class ExecuteRollRequest(BaseModel):
    """Server asks the owning player's client to execute a roll."""
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["execute_roll"] = "execute_roll"
    request_id: str
    actor_id: str = Field(alias="actorId")
    roll_info: Dict[str, Any] = Field(alias="rollInfo")
    category: Dict[str, Any]


class ExecuteRollResult(BaseModel):
    """Player client reports whether it executed the roll."""
    type: Literal["execute_roll_result"] = "execute_roll_result"
    request_id: str
    success: bool


class RelayStatusBroadcast(BaseModel):
    type: Literal["relay_status"] = "relay_status"
    status: str
    timestamp: datetime = Field(default_factory=datetime.now)


class RelayNotification(BaseModel):
    type: Literal["relay_notification"] = "relay_notification"
    level: Literal["info", "warning", "error"] = "info"
    message: str
    timestamp: datetime = Field(default_factory=datetime.now)


class RollRelayedBroadcast(BaseModel):
    """A relayed roll finished processing."""
    type: Literal["roll_relayed"] = "roll_relayed"
    action: str
    character_name: str
    total: int
    tier: str
    message_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.now)


# ============================================================================
# HTTP API
# ============================================================================

class RelaySettingsUpdate(BaseModel):
    roll_ownership: Optional[RollOwnership] = None
    skip_spell_slot_consumption: Optional[bool] = None


class RelaySettings(BaseModel):
    roll_ownership: RollOwnership
    skip_spell_slot_consumption: bool


class MappingRequest(BaseModel):
    character_id: str = Field(..., min_length=1)


class MappingResponse(BaseModel):
    remote_character_id: str
    character_id: str


class RelayStatus(BaseModel):
    status: str
    session_id: Optional[str] = None
    reconnect_attempts: int
    max_reconnect_attempts: int
    reconnect_pending: bool
    authorized: bool
    base_url: str
    running: bool
    players_online: List[str] = []


class RollRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    sender_id: Optional[str] = None
    sender_name: str
    character_id: Optional[str] = None
    message_type: str
    content: str
    extra_data: Dict[str, Any] = {}
    flags: Dict[str, Any] = {}
    external: bool = False
    created_at: Optional[datetime] = None
