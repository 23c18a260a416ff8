"""
Room reference data for the chat load test.

Rooms are loaded once from a JSON document of the form
``{"rooms": [{"roomId": ..., "userId": ..., "patientId": ...}, ...]}`` and
stay read-only for the whole run.
"""

import json
import logging
from dataclasses import dataclass
from typing import List, Tuple

logger = logging.getLogger(__name__)


class RoomDataError(ValueError):
    """Raised when the rooms file cannot be used for a run."""


@dataclass(frozen=True)
class Room:
    room_id: str
    user_id: str
    patient_id: str

    @classmethod
    def from_dict(cls, data: dict) -> "Room":
        try:
            return cls(
                room_id=data["roomId"],
                user_id=data["userId"],
                patient_id=data["patientId"],
            )
        except (KeyError, TypeError) as e:
            raise RoomDataError(f"Invalid room record {data!r}: missing {e}") from e


def load_rooms(path: str) -> List[Room]:
    """Load the ``rooms`` array from a JSON test-data file."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            document = json.load(f)
    except FileNotFoundError as e:
        raise RoomDataError(f"Rooms file not found: {path}") from e
    except json.JSONDecodeError as e:
        raise RoomDataError(f"Rooms file {path} is not valid JSON: {e}") from e

    records = document.get("rooms") if isinstance(document, dict) else None
    if not records:
        raise RoomDataError(f"Rooms file {path} has no 'rooms' entries")

    rooms = [Room.from_dict(record) for record in records]
    logger.info(f"Loaded {len(rooms)} rooms from {path}")
    return rooms


def select_room_index(vu_id: int, room_count: int, single_room: bool = False) -> int:
    """
    Map a virtual user to a room index.

    Multi-room mode spreads users round-robin, so VU 1 -> room 0, VU 2 -> room 1,
    and with N rooms VU N+1 wraps back to room 0. Single-room mode pins every
    user to room 0.
    """
    if room_count <= 0:
        raise RoomDataError("No rooms available for selection")
    if single_room:
        return 0
    return (vu_id - 1) % room_count


def select_room(vu_id: int, rooms: List[Room], single_room: bool = False) -> Tuple[int, Room]:
    index = select_room_index(vu_id, len(rooms), single_room=single_room)
    return index, rooms[index]
