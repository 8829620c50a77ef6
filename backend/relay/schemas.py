"""
Pydantic types for relayed rolls.

Everything here is frozen: a parsed event is shared by the router, the
dispatcher and the player RPC, and none of them may alter the remote dice.
Field names are snake_case in Python and camelCase on the wire.
"""

from enum import Enum
from typing import Optional, Tuple

from pydantic import BaseModel, ConfigDict, computed_field
from pydantic.alias_generators import to_camel


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)


# ============================================================================
# ROLL EVENTS
# ============================================================================

class RollKind(str, Enum):
    NORMAL = "normal"
    ADVANTAGE = "advantage"
    DISADVANTAGE = "disadvantage"
    CRITICAL = "critical"

    @classmethod
    def from_wire(cls, value: Optional[str]) -> "RollKind":
        value = (value or "").strip().lower()
        if value == "advantage":
            return cls.ADVANTAGE
        if value == "disadvantage":
            return cls.DISADVANTAGE
        if value in ("critical hit", "critical"):
            return cls.CRITICAL
        return cls.NORMAL


class CharacterKind(str, Enum):
    PC = "pc"
    NPC = "npc"


class DiceSet(_Frozen):
    """One `{count}{dieType}` group and its faces, in remote order."""
    die_type: str
    count: int
    faces: Tuple[int, ...] = ()

    @property
    def sides(self) -> Optional[int]:
        digits = self.die_type.lower().lstrip("d")
        return int(digits) if digits.isdigit() else None


class RemoteRoll(_Frozen):
    """A single remote roll; `total` is authoritative and kept verbatim."""
    roll_type: str = "check"
    roll_kind: RollKind = RollKind.NORMAL
    total: int = 0
    sets: Tuple[DiceSet, ...] = ()
    constant: int = 0

    def faces(self) -> Tuple[int, ...]:
        return tuple(value for dice_set in self.sets for value in dice_set.faces)


class DieResult(_Frozen):
    die_type: str
    value: int


class RollEvent(_Frozen):
    action: str = "Unknown"
    roll_type: str = "check"
    roll_kind: RollKind = RollKind.NORMAL
    total: int = 0
    formula: str = ""
    dice_results: Tuple[DieResult, ...] = ()
    character_id: str = ""
    character_name: str = "Unknown"
    character_kind: CharacterKind = CharacterKind.PC
    source: str = "web"
    raw_rolls: Tuple[RemoteRoll, ...] = ()

    @computed_field
    @property
    def is_advantage(self) -> bool:
        return self.roll_kind == RollKind.ADVANTAGE

    @computed_field
    @property
    def is_disadvantage(self) -> bool:
        return self.roll_kind == RollKind.DISADVANTAGE

    @computed_field
    @property
    def is_critical(self) -> bool:
        return self.roll_kind == RollKind.CRITICAL

    @property
    def first_roll(self) -> Optional[RemoteRoll]:
        return self.raw_rolls[0] if self.raw_rolls else None


# ============================================================================
# CATEGORIES & ROUTES
# ============================================================================

class CategoryKind(str, Enum):
    SAVE = "save"
    ABILITY_CHECK = "abilityCheck"
    SKILL = "skill"
    TOOL = "tool"
    ATTACK = "attack"
    DAMAGE = "damage"
    HEAL = "heal"
    INITIATIVE = "initiative"
    CUSTOM_CHECK = "customCheck"
    UNKNOWN = "unknown"


class RollCategory(_Frozen):
    kind: CategoryKind
    action: str
    resolved_key: Optional[str] = None


class ExecutionLocus(str, Enum):
    REMOTE_PLAYER = "remotePlayer"
    LOCAL = "local"


class ExecutionRoute(_Frozen):
    locus: ExecutionLocus
    owner_id: Optional[str] = None


class ExecutionTier(str, Enum):
    """Which rung of the fallback chain produced the record."""
    REMOTE = "remote"
    LOCAL = "local"
    GENERIC = "generic"
    FAILED = "failed"


class RollOutcome(_Frozen):
    event: RollEvent
    category: Optional[RollCategory] = None
    route: Optional[ExecutionRoute] = None
    tier: ExecutionTier
    message_id: Optional[str] = None
