"""
Writing relayed rolls into the local message log.

Every record carries a signed `roll_relay` flag so other local systems can
recognize (and skip) externally sourced rolls.
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from backend.auth.jwt import sign_roll_marker, verify_roll_marker
from backend.models import Message
from backend.relay.dice import roll_from_remote
from backend.relay.parser import roll_type_label
from backend.relay.schemas import RollEvent, RollKind
from backend.rules_engine import Roll

logger = logging.getLogger(__name__)

FLAG_KEY = "roll_relay"


# ============================================================================
# ORIGIN MARKER
# ============================================================================

def build_flags(event: RollEvent) -> Dict[str, Any]:
    claims = {
        "external": True,
        "character_id": event.character_id,
        "source": event.source,
        "roll_type": event.roll_type,
        "action": event.action,
    }
    return {FLAG_KEY: {**claims, "marker": sign_roll_marker(claims)}}


def is_external_record(message: Message) -> bool:
    """True only when the record's relay flag carries a valid marker for its own claims."""
    flag = (message.flags or {}).get(FLAG_KEY)
    if not isinstance(flag, dict) or not flag.get("marker"):
        return False

    claims = verify_roll_marker(flag["marker"])
    if claims is None:
        return False

    return all(flag.get(key) == value for key, value in claims.items())


# ============================================================================
# RECORDERS
# ============================================================================

def _kind_label(event: RollEvent) -> str:
    if event.roll_kind == RollKind.ADVANTAGE:
        return " (Advantage)"
    if event.roll_kind == RollKind.DISADVANTAGE:
        return " (Disadvantage)"
    if event.roll_kind == RollKind.CRITICAL:
        return " (Critical)"
    return ""


def _save(db: Session, message: Message) -> Message:
    db.add(message)
    db.commit()
    db.refresh(message)
    return message


def record_roll_message(db: Session, event: RollEvent, roll: Roll, character=None,
                        message_type: str = "roll", extra: Optional[Dict[str, Any]] = None) -> Message:
    """Record an evaluated roll (dice already carry the remote faces)."""
    extra_data = {"roll": roll.to_dict(), "remote_total": event.total, "roll_kind": event.roll_kind.value}
    if extra:
        extra_data.update(extra)

    message = Message(
        sender_id=character.owner_id if character else None,
        sender_name=character.name if character else event.character_name,
        character_id=character.id if character else None,
        message_type=message_type,
        content=f"{roll.flavor}: {roll.total}",
        extra_data=extra_data,
        flags=build_flags(event),
    )
    message = _save(db, message)
    logger.info(f"📝 Recorded {message_type} for {message.sender_name}: {roll.flavor} = {roll.total}")
    return message


def record_descriptive(db: Session, event: RollEvent, character=None) -> Message:
    """Plain text record for rolls that cannot be rebuilt at all."""
    label = roll_type_label(event.roll_type)
    content = f"{event.action}: {label}{_kind_label(event)}"
    if event.formula:
        content += f" | {event.formula} = {event.total}"
    else:
        content += f" = {event.total}"
    if event.dice_results:
        content += " | Dice: " + ", ".join(str(d.value) for d in event.dice_results)
    content += f" (via {event.source})"

    message = Message(
        sender_id=character.owner_id if character else None,
        sender_name=character.name if character else event.character_name,
        character_id=character.id if character else None,
        message_type="roll_description",
        content=content,
        extra_data={
            "formula": event.formula,
            "total": event.total,
            "dice": [d.model_dump(mode='json') for d in event.dice_results],
            "roll_kind": event.roll_kind.value,
        },
        flags=build_flags(event),
    )
    return _save(db, message)


def record_standalone_roll(db: Session, event: RollEvent, character=None) -> Message:
    """
    Record the remote roll as-is: remote dice, remote constant, remote total.

    Used when no local roll can be built (unknown category, missing item or
    activity, unmapped character). Falls back to a descriptive record when the
    event has no dice at all.
    """
    flavor = f"{event.action}: {roll_type_label(event.roll_type)}{_kind_label(event)}"
    roll = roll_from_remote(event.first_roll, flavor=flavor)
    if roll is None:
        return record_descriptive(db, event, character)
    return record_roll_message(db, event, roll, character, message_type="roll",
                               extra={"standalone": True})
