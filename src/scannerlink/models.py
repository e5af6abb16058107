"""Data models for scannerlink."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, List, Optional, Tuple

from .audio_utils import WAV_HEADER_SIZE


class InvalidTransition(ValueError):
    """Raised when an incident would move backward or leave a terminal state."""


@dataclass
class AudioFrame:
    data: bytes
    timestamp: datetime
    sample_rate: int = 48000
    channels: int = 1
    channel_key: str = "default"


@dataclass(frozen=True)
class Segment:
    id: str
    channel_key: str
    start_time: datetime
    end_time: datetime
    sample_rate: int
    channel_count: int
    payload: bytes
    sequence_number: int

    @property
    def pcm(self) -> bytes:
        return self.payload[WAV_HEADER_SIZE:]

    @property
    def duration_seconds(self) -> float:
        return (self.end_time - self.start_time).total_seconds()


@dataclass(frozen=True)
class Transcript:
    segment_id: str
    text: str
    confidence: float = 0.0


class ConversationStatus(str, Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"
    OVERFLOW = "OVERFLOW"


@dataclass(frozen=True)
class Overflow:
    recommended_split_time: datetime


@dataclass
class Conversation:
    id: str
    channel_key: str
    window_start: datetime
    window_end: datetime
    segments: List[Segment] = field(default_factory=list)
    status: ConversationStatus = ConversationStatus.OPEN
    transcripts: Dict[str, Transcript] = field(default_factory=dict)
    overflow: Optional[Overflow] = None
    closed_at: Optional[datetime] = None

    @property
    def window(self) -> timedelta:
        return self.window_end - self.window_start

    @property
    def is_open(self) -> bool:
        return self.status is ConversationStatus.OPEN

    def transcript_texts(self) -> List[str]:
        texts = []
        for seg in self.segments:
            transcript = self.transcripts.get(seg.id)
            if transcript and transcript.text:
                texts.append(transcript.text)
        return texts

    def text(self) -> str:
        return " ".join(self.transcript_texts())


@dataclass(frozen=True)
class SignalResult:
    conversation_id: str
    is_requested: bool
    confidence: float
    physician_name: Optional[str] = None
    matched_phrase: Optional[str] = None
    match_kind: Optional[str] = None
    level: str = "none"


class IncidentStatus(str, Enum):
    DISPATCHED = "DISPATCHED"
    EN_ROUTE = "EN_ROUTE"
    ARRIVING_SHORTLY = "ARRIVING_SHORTLY"
    AT_FACILITY = "AT_FACILITY"
    COMPLETED = "COMPLETED"

    @property
    def rank(self) -> int:
        return _STATUS_ORDER.index(self)


_STATUS_ORDER = [
    IncidentStatus.DISPATCHED,
    IncidentStatus.EN_ROUTE,
    IncidentStatus.ARRIVING_SHORTLY,
    IncidentStatus.AT_FACILITY,
    IncidentStatus.COMPLETED,
]


@dataclass(frozen=True)
class Location:
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    description: Optional[str] = None

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None


@dataclass(frozen=True)
class Facility:
    name: str
    address: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None


@dataclass
class Incident:
    id: int
    unit_id: str
    dispatch_time: datetime
    eta_minutes: int
    dispatch_location: Location = field(default_factory=Location)
    status: IncidentStatus = IncidentStatus.DISPATCHED
    linked_conversation_id: Optional[str] = None
    related_conversation_ids: List[str] = field(default_factory=list)
    facility_name: Optional[str] = None
    distance_miles: Optional[float] = None
    en_route_time: Optional[datetime] = None
    priority: str = "medium"
    call_text: str = ""
    status_history: List[Tuple[IncidentStatus, datetime]] = field(default_factory=list)

    @property
    def eta_anchor(self) -> datetime:
        return self.en_route_time or self.dispatch_time

    @property
    def is_terminal(self) -> bool:
        return self.status is IncidentStatus.COMPLETED

    def transition(self, status: IncidentStatus, at: datetime) -> None:
        if self.is_terminal:
            raise InvalidTransition(f"Incident {self.id} is already completed.")
        if status.rank <= self.status.rank:
            raise InvalidTransition(
                f"Incident {self.id} cannot move from {self.status.value} to {status.value}."
            )
        self.status = status
        self.status_history.append((status, at))
