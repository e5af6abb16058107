"""Configuration handling."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Dict, List, Optional
import yaml

from .models import Facility


@dataclass
class ReceiverConfig:
    channel_key: str = "scanner"
    sample_rate_hz: int = 48000
    channels: int = 1
    frame_ms: int = 20
    udp_host: str = "0.0.0.0"
    udp_port: int = 9999
    read_size: int = 4096


@dataclass
class SegmenterConfig:
    rms_threshold: float = 1000.0
    min_frame_bytes: int = 512
    silence_timeout_seconds: float = 5.0
    max_segment_seconds: float = 30.0


@dataclass
class ConversationConfig:
    max_window_minutes: float = 10.0
    inactivity_minutes: float = 10.0


@dataclass
class SignalConfig:
    base_confidence: float = 0.7
    name_with_request_bonus: float = 0.3
    name_only_bonus: float = 0.1
    context_bonus_step: float = 0.1
    context_bonus_max: float = 0.2
    max_edit_distance: int = 2
    fuzzy_long_length: int = 12
    low_threshold: float = 0.3
    high_threshold: float = 0.7
    request_phrases: List[str] = field(
        default_factory=lambda: [
            "signature of release",
            "sor",
            "s.o.r.",
            "release signature",
            "physician signature",
            "doctor signature",
            "release form",
            "need signature",
            "requesting signature",
            "requesting orders",
            "request orders",
            "need orders",
            "sign off",
            "physician authorization",
            "doctor authorization",
            "medical authorization",
        ]
    )
    fuzzy_phrases: List[str] = field(
        default_factory=lambda: [
            "signature of release",
            "release signature",
            "physician signature",
            "doctor signature",
            "need signature",
            "requesting signature",
            "requesting orders",
            "request orders",
            "need orders",
            "physician authorization",
            "doctor authorization",
            "medical authorization",
        ]
    )
    acronym_misspellings: List[str] = field(
        default_factory=lambda: ["s o r", "s-o-r", "s.o.r", "esor", "soar", "sorr"]
    )
    non_speech_markers: List[str] = field(
        default_factory=lambda: [
            "[no transcription available]",
            "[unable to transcribe audio]",
            "[no speech detected]",
            "[audio transcription failed]",
            "[error parsing transcription]",
            "transcription pending...",
            "[static]",
            "[beeping]",
            "[silence]",
        ]
    )
    courtesy_phrases: List[str] = field(
        default_factory=lambda: [
            "any questions or orders at this time",
            "any questions or orders",
            "any orders or questions",
            "any further orders",
            "thank you",
            "thanks",
            "have a good day",
            "have a good night",
            "see you soon",
        ]
    )
    physician_titles: List[str] = field(
        default_factory=lambda: [
            "dr",
            "doctor",
            "physician",
            "doc",
            "provider",
            "attending",
            "resident",
            "intern",
            "hospitalist",
            "emergency physician",
            "emergency doctor",
            "trauma doctor",
            "trauma physician",
        ]
    )
    context_terms: List[str] = field(
        default_factory=lambda: [
            "patient",
            "vitals",
            "transport",
            "hospital",
            "emergency",
            "medical",
            "treatment",
            "blood pressure",
            "refusal",
            "refusing",
        ]
    )


@dataclass
class CorrelatorConfig:
    lookback_minutes: float = 60.0
    lookahead_minutes: float = 0.0
    average_speed_mph: float = 40.0
    loading_allowance_minutes: int = 2


@dataclass
class SchedulerConfig:
    period_seconds: float = 30.0
    completion_grace_minutes: float = 10.0


@dataclass
class DistanceConfig:
    provider: str = "haversine"
    api_key: Optional[str] = None
    timeout_seconds: float = 10.0


@dataclass
class FacilityConfig:
    name: str
    address: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    def to_facility(self) -> Facility:
        return Facility(
            name=self.name,
            address=self.address,
            latitude=self.latitude,
            longitude=self.longitude,
        )


@dataclass
class Config:
    base_dir: str = ""
    receiver: ReceiverConfig = field(default_factory=ReceiverConfig)
    segmenter: SegmenterConfig = field(default_factory=SegmenterConfig)
    conversation: ConversationConfig = field(default_factory=ConversationConfig)
    signals: SignalConfig = field(default_factory=SignalConfig)
    correlator: CorrelatorConfig = field(default_factory=CorrelatorConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    distance: DistanceConfig = field(default_factory=DistanceConfig)
    facilities: Dict[str, FacilityConfig] = field(default_factory=dict)
    dispatch_channels: List[str] = field(default_factory=list)
    hospital_channels: List[str] = field(default_factory=list)

    def channel_role(self, channel_key: str) -> str:
        """Role of a channel key: "dispatch", "hospital" or "other".

        With no hospital channels listed, every non-dispatch channel is a
        hospital channel.
        """
        if channel_key in self.dispatch_channels:
            return "dispatch"
        if not self.hospital_channels or channel_key in self.hospital_channels:
            return "hospital"
        return "other"

    def facility_for(self, channel_key: str) -> Optional[Facility]:
        entry = self.facilities.get(channel_key)
        return entry.to_facility() if entry else None


def default_config() -> Config:
    return Config()


def load_config(path: str) -> Config:
    with open(path, "r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}

    facilities = {
        str(key): FacilityConfig(**value)
        for key, value in (data.get("facilities") or {}).items()
    }

    return Config(
        base_dir=data.get("base_dir", ""),
        receiver=ReceiverConfig(**data.get("receiver", {})),
        segmenter=SegmenterConfig(**data.get("segmenter", {})),
        conversation=ConversationConfig(**data.get("conversation", {})),
        signals=SignalConfig(**data.get("signals", {})),
        correlator=CorrelatorConfig(**data.get("correlator", {})),
        scheduler=SchedulerConfig(**data.get("scheduler", {})),
        distance=DistanceConfig(**data.get("distance", {})),
        facilities=facilities,
        dispatch_channels=[str(c) for c in data.get("dispatch_channels") or []],
        hospital_channels=[str(c) for c in data.get("hospital_channels") or []],
    )


def save_config(path: str, config: Config) -> None:
    data = asdict(config)
    with open(path, "w", encoding="utf-8") as handle:
        yaml.safe_dump(data, handle, sort_keys=False)
