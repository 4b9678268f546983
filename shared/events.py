from enum import Enum
from dataclasses import dataclass
from datetime import datetime
from typing import Optional
import json


class EventType(str, Enum):
    # Module configuration
    MODULE_UPDATED = "module.updated"
    MODULES_RESET = "module.reset"

    # Song queue
    QUEUE_ENTRY_ADDED = "queue.entry_added"
    QUEUE_ENTRY_PLAYED = "queue.entry_played"
    QUEUE_ENTRY_REMOVED = "queue.entry_removed"

    # Teams
    TEAM_STATUS_CHANGED = "team.status_changed"

    # Competitions
    COMPETITION_STATE_CHANGED = "competition.state_changed"
    MATCH_RESULT = "match.result"
    ROUND_STARTED = "round.started"


@dataclass
class ActivityEvent:
    type: EventType
    event_id: int
    timestamp: str = None
    data: dict = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = datetime.utcnow().isoformat() + "Z"
        if self.data is None:
            self.data = {}

    def to_dict(self) -> dict:
        return {
            "type": self.type.value if isinstance(self.type, EventType) else self.type,
            "event_id": self.event_id,
            "timestamp": self.timestamp,
            "data": self.data
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: dict) -> "ActivityEvent":
        return cls(
            type=EventType(data["type"]) if data["type"] in [e.value for e in EventType] else data["type"],
            event_id=data["event_id"],
            timestamp=data.get("timestamp"),
            data=data.get("data", {})
        )

    @classmethod
    def from_json(cls, json_str: str) -> "ActivityEvent":
        return cls.from_dict(json.loads(json_str))


def module_updated_event(event_id: int, module: str, active: bool) -> ActivityEvent:
    return ActivityEvent(
        type=EventType.MODULE_UPDATED,
        event_id=event_id,
        data={"module": module, "active": active}
    )


def modules_reset_event(event_id: int) -> ActivityEvent:
    return ActivityEvent(type=EventType.MODULES_RESET, event_id=event_id)


def queue_entry_event(event_type: EventType, event_id: int, entry_id: int,
                      song_id: int, requester_id: int, score: Optional[int] = None) -> ActivityEvent:
    data = {
        "entry_id": entry_id,
        "song_id": song_id,
        "requester_id": requester_id
    }
    if score is not None:
        data["score"] = score
    return ActivityEvent(type=event_type, event_id=event_id, data=data)


def team_status_changed_event(event_id: int, team_id: int, from_state: str, to_state: str) -> ActivityEvent:
    return ActivityEvent(
        type=EventType.TEAM_STATUS_CHANGED,
        event_id=event_id,
        data={
            "team_id": team_id,
            "from_state": from_state,
            "to_state": to_state
        }
    )


def competition_state_changed_event(event_id: int, competition_id: int,
                                    from_state: str, to_state: str) -> ActivityEvent:
    return ActivityEvent(
        type=EventType.COMPETITION_STATE_CHANGED,
        event_id=event_id,
        data={
            "competition_id": competition_id,
            "from_state": from_state,
            "to_state": to_state
        }
    )


def match_result_event(event_id: int, competition_id: int, match_id: str,
                       winner_id: int, round_num: int) -> ActivityEvent:
    return ActivityEvent(
        type=EventType.MATCH_RESULT,
        event_id=event_id,
        data={
            "competition_id": competition_id,
            "match_id": match_id,
            "winner": winner_id,
            "round": round_num
        }
    )


def round_started_event(event_id: int, competition_id: int, round_num: int, matches_count: int) -> ActivityEvent:
    return ActivityEvent(
        type=EventType.ROUND_STARTED,
        event_id=event_id,
        data={
            "competition_id": competition_id,
            "round": round_num,
            "matches_count": matches_count
        }
    )
