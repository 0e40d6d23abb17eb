"""
Conversion of raw model replies into votes.

Malformed fields never raise: a reply with no usable intent or confidence
becomes an invalid Vote, which the consensus engine ignores but the round
keeps for audit.
"""

import math
from typing import Any, Dict, List, Optional

from intentmoe.config import ParticipantConfig
from intentmoe.neural.model_client import ModelReply

from .schemas import Vote


def make_vote_id(round_id: str, participant_id: str, round_number: int) -> str:
    return f"vote_{round_id}_{participant_id}_{round_number}"


def coerce_confidence(value: Any) -> Optional[float]:
    """Numeric or numeric-string confidence, else None. Range is not checked here."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        result = float(value)
    elif isinstance(value, str):
        try:
            result = float(value.strip().rstrip("%"))
        except ValueError:
            return None
        if value.strip().endswith("%"):
            result /= 100.0
    else:
        return None
    return None if math.isnan(result) else result


def coerce_subtasks(value: Any) -> List[Dict[str, Any]]:
    if not isinstance(value, list):
        return []
    return [dict(item) for item in value if isinstance(item, dict)]


def vote_from_reply(
    reply: ModelReply,
    participant: ParticipantConfig,
    round_id: str,
    round_number: int = 1,
) -> Vote:
    """
    Build a Vote from a participant's reply.

    Args:
        reply: Raw reply fields
        participant: Participant that answered
        round_id: Owning voting round
        round_number: Debate round number

    Returns:
        The vote; check ``is_valid`` before counting it
    """
    intent = reply.intent_raw.strip() if isinstance(reply.intent_raw, str) else ""
    entities = dict(reply.entities_raw) if isinstance(reply.entities_raw, dict) else {}

    return Vote(
        vote_id=make_vote_id(round_id, participant.id, round_number),
        model_id=participant.id,
        model_weight=participant.weight,
        intent=intent,
        confidence=coerce_confidence(reply.confidence_raw),
        entities=entities,
        subtasks=coerce_subtasks(reply.subtasks_raw),
        reasoning=reply.reasoning if isinstance(reply.reasoning, str) else "",
        round_number=round_number,
    )
