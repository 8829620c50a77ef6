"""
Deciding who executes a relayed roll, and the fallback chain around it.

For every event: resolve the local character, categorize, pick the locus
from ROUTING_PRIORITY, then try remote → local → generic, one attempt each.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from pydantic import ValidationError
from sqlalchemy.orm import Session

from backend.config import RollOwnership
from backend.models import Character, Message
from backend.relay.dispatcher import RollDispatcher
from backend.relay.mappings import resolve_character
from backend.relay.parser import determine_roll_category
from backend.relay.records import record_standalone_roll
from backend.relay.schemas import (
    ExecutionLocus,
    ExecutionRoute,
    ExecutionTier,
    RollCategory,
    RollEvent,
    RollOutcome,
)

logger = logging.getLogger(__name__)

RemoteExecutor = Callable[[str, Dict[str, Any]], Awaitable[bool]]


class OwnerState(str, Enum):
    NONE = "none"
    OFFLINE = "offline"
    ONLINE = "online"


# (ownership preference, owner state) → locus
ROUTING_PRIORITY = {
    (RollOwnership.GM, OwnerState.NONE): ExecutionLocus.LOCAL,
    (RollOwnership.GM, OwnerState.OFFLINE): ExecutionLocus.LOCAL,
    (RollOwnership.GM, OwnerState.ONLINE): ExecutionLocus.LOCAL,
    (RollOwnership.PLAYER, OwnerState.NONE): ExecutionLocus.LOCAL,
    (RollOwnership.PLAYER, OwnerState.OFFLINE): ExecutionLocus.LOCAL,
    (RollOwnership.PLAYER, OwnerState.ONLINE): ExecutionLocus.REMOTE_PLAYER,
}


def decide_route(character: Character, ownership: RollOwnership,
                 is_online: Callable[[str], bool]) -> ExecutionRoute:
    owner_id = character.owner_id
    if not owner_id:
        state = OwnerState.NONE
    elif is_online(owner_id):
        state = OwnerState.ONLINE
    else:
        state = OwnerState.OFFLINE

    locus = ROUTING_PRIORITY[(RollOwnership(ownership), state)]
    return ExecutionRoute(locus=locus, owner_id=owner_id if locus == ExecutionLocus.REMOTE_PLAYER else None)


def build_remote_payload(character: Character, event: RollEvent, category: RollCategory) -> Dict[str, Any]:
    return {
        "actorId": character.id,
        "rollInfo": event.model_dump(mode='json', by_alias=True),
        "category": category.model_dump(mode='json', by_alias=True),
    }


class ExecutionRouter:
    """
    Runs one event through the fallback chain. `process` never raises.

    Args:
        dispatcher: local executor.
        ownership_provider: returns the current RollOwnership (read per event).
        presence: user id → whether that player has a live channel.
        remote_executor: async (owner_id, payload) → bool; None disables the
            remote tier.
        rpc_timeout: seconds to wait for the owner before falling back.
    """

    def __init__(self, dispatcher: RollDispatcher,
                 ownership_provider: Callable[[], RollOwnership],
                 presence: Optional[Callable[[str], bool]] = None,
                 remote_executor: Optional[RemoteExecutor] = None,
                 rpc_timeout: float = 15.0):
        self.dispatcher = dispatcher
        self.ownership_provider = ownership_provider
        self.presence = presence or (lambda user_id: False)
        self.remote_executor = remote_executor
        self.rpc_timeout = rpc_timeout

    async def process(self, db: Session, event: RollEvent) -> RollOutcome:
        character = resolve_character(db, event.character_id)
        if character is None:
            logger.warning(f"No local character for remote id {event.character_id} ({event.character_name})")
            return self._generic(db, event, None, None, None)

        category = determine_roll_category(event.action, event.roll_type, character)
        route = decide_route(character, self.ownership_provider(), self.presence)
        logger.info(
            f"🎲 {event.character_name}: {event.action} ({event.roll_type}) → {category.kind.value} via {route.locus.value}",
            extra={"character_id": character.id},
        )

        if route.locus == ExecutionLocus.REMOTE_PLAYER:
            payload = build_remote_payload(character, event, category)
            if await self._try_remote(route.owner_id, payload):
                # The owner's client accepted; the record is written here on their behalf
                message = execute_remote_payload(db, self.dispatcher, payload)
                if message is not None:
                    return RollOutcome(event=event, category=category, route=route,
                                       tier=ExecutionTier.REMOTE, message_id=message.id)
                logger.warning(f"Accepted roll '{event.action}' could not be recorded for {route.owner_id}")
            else:
                logger.info(f"Player {route.owner_id} did not execute '{event.action}'; executing locally")

        try:
            message = self.dispatcher.execute(db, character, event, category)
            return RollOutcome(event=event, category=category, route=route,
                               tier=ExecutionTier.LOCAL, message_id=message.id)
        except Exception as e:
            db.rollback()
            logger.error(f"❌ Local execution of '{event.action}' failed: {e}", exc_info=True,
                         extra={"character_id": character.id})

        return self._generic(db, event, character, category, route)

    async def _try_remote(self, owner_id: str, payload: Dict[str, Any]) -> bool:
        if self.remote_executor is None:
            return False
        try:
            return bool(await asyncio.wait_for(self.remote_executor(owner_id, payload), timeout=self.rpc_timeout))
        except asyncio.TimeoutError:
            logger.warning(f"⏱️ Player {owner_id} did not answer within {self.rpc_timeout}s")
        except Exception as e:
            logger.warning(f"Remote execution request to {owner_id} failed: {e}")
        return False

    def _generic(self, db, event, character, category, route) -> RollOutcome:
        try:
            message = record_standalone_roll(db, event, character)
            return RollOutcome(event=event, category=category, route=route,
                               tier=ExecutionTier.GENERIC, message_id=message.id)
        except Exception as e:
            db.rollback()
            logger.error(f"❌ Could not record '{event.action}' for {event.character_name}: {e}", exc_info=True)
            return RollOutcome(event=event, category=category, route=route, tier=ExecutionTier.FAILED)


def execute_remote_payload(db: Session, dispatcher: RollDispatcher,
                           payload: Dict[str, Any]) -> Optional[Message]:
    """
    Execute an RPC payload `{actorId, rollInfo, category}` for its owner.

    The record's sender is the character's owner. Returns None instead of
    raising so the caller can fall back.
    """
    try:
        event = RollEvent.model_validate(payload.get("rollInfo") or {})
        category = RollCategory.model_validate(payload.get("category") or {})
    except ValidationError as e:
        logger.warning(f"Invalid remote execution payload: {e}")
        return None

    character = db.get(Character, payload.get("actorId")) if payload.get("actorId") else None
    if character is None:
        logger.warning(f"Remote execution for unknown character {payload.get('actorId')}")
        return None

    try:
        return dispatcher.execute(db, character, event, category)
    except Exception as e:
        db.rollback()
        logger.error(f"❌ Remote execution of '{event.action}' failed: {e}", exc_info=True)
        return None


def handle_remote_execution(db: Session, dispatcher: RollDispatcher, payload: Dict[str, Any]) -> bool:
    """Player-side half of the RPC; True when the roll was recorded."""
    return execute_remote_payload(db, dispatcher, payload) is not None
