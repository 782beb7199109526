"""
Row, change-feed and request schemas shared by the server and the client core.
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class Phase(str, Enum):
    """Game lifecycle phase."""
    LOBBY = "LOBBY"
    SELECTING = "SELECTING"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"

    @property
    def is_terminal(self) -> bool:
        return self is Phase.COMPLETED


# Normal (guarded) forward transitions
NEXT_PHASE = {
    Phase.LOBBY: Phase.SELECTING,
    Phase.SELECTING: Phase.ACTIVE,
    Phase.ACTIVE: Phase.COMPLETED,
}


class GameSession(BaseModel):
    """Snapshot of a shared game row."""
    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: str
    phase: Phase
    created_at: datetime
    revision: int = 0


class Participant(BaseModel):
    """Snapshot of a shared participant row."""
    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: int
    game_id: str
    name: str
    is_host: bool = False
    is_poisoner: Optional[bool] = None
    acknowledged: bool = False
    revision: int = 0


# ---- Change feed events ----

class GameInsert(BaseModel):
    model_config = ConfigDict(frozen=True)
    table: Literal["games"] = "games"
    event_type: Literal["INSERT"] = "INSERT"
    after: GameSession


class GameUpdate(BaseModel):
    model_config = ConfigDict(frozen=True)
    table: Literal["games"] = "games"
    event_type: Literal["UPDATE"] = "UPDATE"
    before: Optional[GameSession] = None
    after: GameSession


class GameDelete(BaseModel):
    model_config = ConfigDict(frozen=True)
    table: Literal["games"] = "games"
    event_type: Literal["DELETE"] = "DELETE"
    before: GameSession


class ParticipantInsert(BaseModel):
    model_config = ConfigDict(frozen=True)
    table: Literal["participants"] = "participants"
    event_type: Literal["INSERT"] = "INSERT"
    after: Participant


class ParticipantUpdate(BaseModel):
    model_config = ConfigDict(frozen=True)
    table: Literal["participants"] = "participants"
    event_type: Literal["UPDATE"] = "UPDATE"
    before: Optional[Participant] = None
    after: Participant


class ParticipantDelete(BaseModel):
    model_config = ConfigDict(frozen=True)
    table: Literal["participants"] = "participants"
    event_type: Literal["DELETE"] = "DELETE"
    before: Participant


GameEvent = Annotated[Union[GameInsert, GameUpdate, GameDelete], Field(discriminator="event_type")]
ParticipantEvent = Annotated[
    Union[ParticipantInsert, ParticipantUpdate, ParticipantDelete], Field(discriminator="event_type")
]

_event_adapters = {
    "games": TypeAdapter(GameEvent),
    "participants": TypeAdapter(ParticipantEvent),
}


def parse_change(payload: dict):
    """Validate a raw change payload into a typed event.

    Raises ``pydantic.ValidationError`` for malformed payloads and
    ``ValueError`` for unknown tables.
    """
    table = (payload or {}).get("table")
    adapter = _event_adapters.get(table)
    if adapter is None:
        raise ValueError(f"Unknown change table: {table!r}")
    return adapter.validate_python(payload)


# ---- Request bodies ----

class GameCreate(BaseModel):
    phase: Phase = Phase.LOBBY


class GamePatch(BaseModel):
    phase: Phase


class ParticipantCreate(BaseModel):
    name: str = Field(min_length=1, max_length=64)
    is_host: bool = False
    is_poisoner: Optional[bool] = None
    acknowledged: bool = False


class ParticipantPatch(BaseModel):
    """Partial flag update; only fields present in the body are applied."""
    is_host: bool = False
    is_poisoner: Optional[bool] = None
    acknowledged: bool = False


class RoleAssignment(BaseModel):
    poisoner_id: int
