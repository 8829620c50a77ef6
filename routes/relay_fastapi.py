from typing import Any, Dict, List

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session
import logging

from backend.models import Message
from backend.relay.mappings import get_mappings, map_character, unmap_character
from backend.relay.records import is_external_record
from backend.relay.service import RelayService
from routes.player_websocket import manager
from routes.schemas.relay import (
    MappingRequest,
    MappingResponse,
    RelaySettings,
    RelaySettingsUpdate,
    RelayStatus,
    RollRecord,
)

logger = logging.getLogger(__name__)

relay_blp_fastapi = APIRouter(prefix="/relay", tags=["Relay"])


def get_relay(request: Request) -> RelayService:
    return request.app.state.relay


def get_session(request: Request):
    db: Session = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()


def _status(relay: RelayService) -> RelayStatus:
    return RelayStatus(
        **relay.connection.snapshot(),
        running=relay.running,
        players_online=manager.get_connected_users(),
    )


# ============================================================================
# CONNECTION
# ============================================================================

@relay_blp_fastapi.get("/status", response_model=RelayStatus)
def relay_status(relay: RelayService = Depends(get_relay)):
    return _status(relay)


@relay_blp_fastapi.post("/connect", response_model=RelayStatus)
async def relay_connect(relay: RelayService = Depends(get_relay)):
    if not relay.config.is_valid:
        raise HTTPException(status_code=400, detail="Relay is not configured (campaign id, user id, credential)")
    await relay.connection.connect()
    return _status(relay)


@relay_blp_fastapi.post("/disconnect", response_model=RelayStatus)
async def relay_disconnect(relay: RelayService = Depends(get_relay)):
    await relay.connection.disconnect()
    return _status(relay)


@relay_blp_fastapi.post("/reconnect", response_model=RelayStatus)
async def relay_reconnect(relay: RelayService = Depends(get_relay)):
    if not relay.config.is_valid:
        raise HTTPException(status_code=400, detail="Relay is not configured (campaign id, user id, credential)")
    await relay.connection.reconnect()
    return _status(relay)


# ============================================================================
# SETTINGS
# ============================================================================

@relay_blp_fastapi.get("/settings", response_model=RelaySettings)
def relay_settings(relay: RelayService = Depends(get_relay)):
    return relay.settings()


@relay_blp_fastapi.patch("/settings", response_model=RelaySettings)
def update_relay_settings(update: RelaySettingsUpdate, relay: RelayService = Depends(get_relay)):
    return relay.update_settings(
        roll_ownership=update.roll_ownership,
        skip_spell_slot_consumption=update.skip_spell_slot_consumption,
    )


# ============================================================================
# CHARACTER MAPPINGS
# ============================================================================

@relay_blp_fastapi.get("/mappings", response_model=Dict[str, str])
def list_mappings(db: Session = Depends(get_session)):
    return get_mappings(db)


@relay_blp_fastapi.put("/mappings/{remote_character_id}", response_model=MappingResponse)
def put_mapping(remote_character_id: str, body: MappingRequest, db: Session = Depends(get_session)):
    try:
        mapping = map_character(db, remote_character_id, body.character_id)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return MappingResponse(remote_character_id=mapping.remote_character_id, character_id=mapping.character_id)


@relay_blp_fastapi.delete("/mappings/{remote_character_id}")
def delete_mapping(remote_character_id: str, db: Session = Depends(get_session)):
    if not unmap_character(db, remote_character_id):
        raise HTTPException(status_code=404, detail="Mapping not found")
    return {"deleted": remote_character_id}


# ============================================================================
# EVENTS & RECORDS
# ============================================================================

@relay_blp_fastapi.post("/events")
async def replay_event(payload: Dict[str, Any] = Body(...), relay: RelayService = Depends(get_relay)):
    """Push one raw stream event through the queue and return its outcome."""
    outcome = await relay.submit(payload)
    if outcome is None:
        raise HTTPException(status_code=422, detail="Not a usable roll event")
    return outcome.model_dump(mode='json')


@relay_blp_fastapi.get("/records", response_model=List[RollRecord])
def list_records(
    limit: int = Query(50, ge=1, le=500),
    external_only: bool = Query(False),
    db: Session = Depends(get_session),
):
    messages = db.query(Message).order_by(Message.created_at.desc()).limit(limit).all()
    records = []
    for message in messages:
        external = is_external_record(message)
        if external_only and not external:
            continue
        record = RollRecord.model_validate(message)
        records.append(record.model_copy(update={"external": external}))
    return records
