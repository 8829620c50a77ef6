"""
Putting remote die faces into local rolls.

The local rules engine decides modifiers; the remote service decides faces.
These helpers make a locally built Roll show exactly the remote faces.
"""

import logging
from typing import List, Optional

from backend.rules_engine import DieTerm, NumericTerm, Roll
from backend.relay.schemas import RemoteRoll, RollKind

logger = logging.getLogger(__name__)


def build_die_terms(remote: RemoteRoll) -> List[DieTerm]:
    """One evaluated DieTerm per remote dice set."""
    terms = []
    for dice_set in remote.sets:
        faces = dice_set.sides or max(dice_set.faces, default=0)
        terms.append(DieTerm(len(dice_set.faces) or dice_set.count, faces, results=list(dice_set.faces)))
    return terms


def _layout(roll: Roll):
    return [(die.faces, die.number) for die in roll.dice]


def _remote_layout(remote: RemoteRoll):
    return [(s.sides, len(s.faces)) for s in remote.sets]


def inject_remote_faces(roll: Roll, remote: Optional[RemoteRoll]) -> Roll:
    """
    Overwrite every die face of an evaluated local roll with the remote values.

    When the local dice line up with the remote sets, faces are replaced in
    place and keep-highest/lowest still applies. Otherwise the local dice
    terms are swapped for dice built from the remote sets while the local
    numeric modifiers stay.
    """
    if roll is None or remote is None or not remote.sets:
        return roll

    if _layout(roll) == _remote_layout(remote):
        for die, dice_set in zip(roll.dice, remote.sets):
            die.results = list(dice_set.faces)
    else:
        logger.info(f"Local dice {_layout(roll)} differ from remote {_remote_layout(remote)}; using remote dice")
        numeric = [t for t in roll.terms if isinstance(t, NumericTerm)]
        dice = build_die_terms(remote)
        if remote.roll_kind in (RollKind.ADVANTAGE, RollKind.DISADVANTAGE) and len(dice) == 1 and dice[0].number == 2:
            dice[0].modifier = "kh" if remote.roll_kind == RollKind.ADVANTAGE else "kl"
        roll.terms = dice + numeric

    roll.evaluated = True
    roll.recompute()
    return roll


def roll_from_remote(remote: Optional[RemoteRoll], flavor: str = "") -> Optional[Roll]:
    """Standalone roll made of the remote dice and constant; total kept verbatim."""
    if remote is None or not remote.sets:
        return None
    terms = build_die_terms(remote)
    if remote.constant:
        terms.append(NumericTerm(remote.constant, label="constant"))
    return Roll(terms, flavor=flavor, total=remote.total)
