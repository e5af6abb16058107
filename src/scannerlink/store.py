"""On-disk output for segments, conversations, signals and incidents."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List

from .models import Conversation, Incident, Segment, SignalResult
from .pipeline import PipelineSink

logger = logging.getLogger("scannerlink")


def ensure_dir(path: str) -> None:
    os.makedirs(path, exist_ok=True)


def ensure_structure(base_dir: str) -> dict:
    root = base_dir or os.getcwd()
    paths = {
        "root": root,
        "segments": os.path.join(root, "Segments"),
        "conversations": os.path.join(root, "Conversations"),
        "incidents": os.path.join(root, "Incidents"),
        "logs": os.path.join(root, "Logs"),
    }
    for path in paths.values():
        ensure_dir(path)
    return paths


def _plain(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


def segment_record(segment: Segment) -> Dict[str, Any]:
    return {
        "id": segment.id,
        "channel_key": segment.channel_key,
        "start_time": segment.start_time.isoformat(),
        "end_time": segment.end_time.isoformat(),
        "duration_seconds": round(segment.duration_seconds, 3),
        "sample_rate": segment.sample_rate,
        "channel_count": segment.channel_count,
        "sequence_number": segment.sequence_number,
        "payload_bytes": len(segment.payload),
    }


def conversation_record(conversation: Conversation) -> Dict[str, Any]:
    return {
        "id": conversation.id,
        "channel_key": conversation.channel_key,
        "status": conversation.status.value,
        "window_start": conversation.window_start.isoformat(),
        "window_end": conversation.window_end.isoformat(),
        "segment_ids": [seg.id for seg in conversation.segments],
        "transcripts": {
            seg_id: {"text": t.text, "confidence": t.confidence}
            for seg_id, t in conversation.transcripts.items()
        },
        "overflow": (
            {"recommended_split_time": conversation.overflow.recommended_split_time.isoformat()}
            if conversation.overflow
            else None
        ),
        "closed_at": conversation.closed_at.isoformat() if conversation.closed_at else None,
    }


def signal_record(result: SignalResult) -> Dict[str, Any]:
    return asdict(result)


def incident_record(incident: Incident) -> Dict[str, Any]:
    data = _plain(asdict(incident))
    data["status_history"] = [
        {"status": status.value, "at": at.isoformat()} for status, at in incident.status_history
    ]
    return data


def _write_json(path: str, payload: Any) -> None:
    with open(path, "w", encoding="utf-8") as handle:
        json.dump(payload, handle, indent=2)


def save_segment(paths: dict, segment: Segment) -> str:
    wav_path = os.path.join(paths["segments"], f"{segment.id}.wav")
    with open(wav_path, "wb") as handle:
        handle.write(segment.payload)
    _write_json(os.path.join(paths["segments"], f"{segment.id}.json"), segment_record(segment))
    return wav_path


def save_conversation(paths: dict, conversation: Conversation, signal: SignalResult | None = None) -> str:
    record = conversation_record(conversation)
    if signal is not None:
        record["signal"] = signal_record(signal)
    path = os.path.join(paths["conversations"], f"{conversation.id}.json")
    _write_json(path, record)
    return path


def save_incident(paths: dict, incident: Incident) -> str:
    path = os.path.join(paths["incidents"], f"{incident.id}.json")
    _write_json(path, incident_record(incident))
    return path


def load_record(path: str) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as handle:
        return json.load(handle)


def load_incidents(directory: str) -> List[Dict[str, Any]]:
    records = []
    for name in sorted(os.listdir(directory)):
        if name.endswith(".json"):
            records.append(load_record(os.path.join(directory, name)))
    return sorted(records, key=lambda r: r.get("id", 0))


class DirectorySink(PipelineSink):
    """Write pipeline output under a base directory."""

    def __init__(self, base_dir: str) -> None:
        self.paths = ensure_structure(base_dir)
        self._signals: Dict[str, SignalResult] = {}

    def segment_finalized(self, segment: Segment) -> None:
        save_segment(self.paths, segment)

    def conversation_updated(self, conversation: Conversation) -> None:
        save_conversation(self.paths, conversation, self._signals.get(conversation.id))

    def signal_evaluated(self, conversation: Conversation, result: SignalResult) -> None:
        self._signals[conversation.id] = result
        save_conversation(self.paths, conversation, result)

    def incident_updated(self, incident: Incident) -> None:
        save_incident(self.paths, incident)
