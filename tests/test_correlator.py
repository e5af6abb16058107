from datetime import datetime, timedelta, timezone

import pytest

from scannerlink.clock import ManualClock
from scannerlink.config import CorrelatorConfig
from scannerlink.correlator import IncidentCorrelator, determine_priority
from scannerlink.distance import DistanceResult
from scannerlink.models import (
    Conversation,
    Facility,
    IncidentStatus,
    InvalidTransition,
    Location,
    Segment,
    Transcript,
)

T0 = datetime(2026, 1, 13, 10, 0, tzinfo=timezone.utc)
SCENE = Location(35.20, -80.80, "400 Oak St")
FACILITIES = {"hosp": Facility("General Hospital", "1 Main St", 35.22, -80.84)}


class FixedDistance:
    def __init__(self, miles=3.0):
        self.miles = miles
        self.calls = 0

    def lookup(self, origin, destination):
        self.calls += 1
        return DistanceResult(self.miles)


class FailingDistance:
    def lookup(self, origin, destination):
        raise RuntimeError("maps unavailable")


def _conversation(text, start_minutes, cid=None, channel="hosp"):
    start = T0 + timedelta(minutes=start_minutes)
    seg = Segment(
        id=f"seg-{start_minutes}",
        channel_key=channel,
        start_time=start,
        end_time=start + timedelta(seconds=15),
        sample_rate=16000,
        channel_count=1,
        payload=b"",
        sequence_number=1,
    )
    return Conversation(
        id=cid or f"CONV-{start_minutes}",
        channel_key=channel,
        window_start=seg.start_time,
        window_end=seg.end_time,
        segments=[seg],
        transcripts={seg.id: Transcript(seg.id, text)},
    )


def _correlator(distance=None, clock=None):
    return IncidentCorrelator(
        CorrelatorConfig(),
        facilities=FACILITIES,
        distance=distance if distance is not None else FixedDistance(),
        clock=clock or ManualClock(T0),
    )


def test_dispatch_creates_incident():
    correlator = _correlator()
    incident = correlator.on_dispatch_event("Medic 12 respond to 400 Oak St", T0, SCENE)

    assert incident.id == 1
    assert incident.unit_id == "Medic 12"
    assert incident.status is IncidentStatus.DISPATCHED
    assert incident.status_history == [(IncidentStatus.DISPATCHED, T0)]
    assert incident.eta_minutes == 8
    assert correlator.incidents() == [incident]


def test_dispatch_without_unit_is_ignored():
    correlator = _correlator()
    assert correlator.on_dispatch_event("respond to 400 Oak St", T0, SCENE) is None
    assert correlator.incidents() == []


def test_conversation_links_and_sets_eta():
    clock = ManualClock(T0)
    correlator = _correlator(clock=clock)
    incident = correlator.on_dispatch_event("Medic 12 respond to 400 Oak St", T0, SCENE)

    clock.set(T0 + timedelta(minutes=32))
    conv = _conversation("Medic 12 en route to your facility", 32)
    assert correlator.on_conversation_update(conv) == [incident]

    assert incident.status is IncidentStatus.EN_ROUTE
    assert incident.linked_conversation_id == conv.id
    assert incident.facility_name == "General Hospital"
    assert incident.distance_miles == 3.0
    assert incident.eta_minutes == 7
    assert incident.en_route_time == T0 + timedelta(minutes=32)
    assert correlator.incident_for_conversation(conv.id) is incident


def test_conversation_update_is_linked_once():
    distance = FixedDistance()
    correlator = _correlator(distance=distance)
    correlator.on_dispatch_event("Medic 12 respond", T0, SCENE)
    conv = _conversation("Medic 12 inbound", 5)

    assert len(correlator.on_conversation_update(conv)) == 1
    assert correlator.on_conversation_update(conv) == []
    assert distance.calls == 1


def test_second_conversation_is_related():
    correlator = _correlator()
    incident = correlator.on_dispatch_event("Medic 12 respond", T0, SCENE)
    first = _conversation("Medic 12 inbound", 5)
    second = _conversation("Medic 12 update, patient stable", 8)

    correlator.on_conversation_update(first)
    assert correlator.on_conversation_update(second) == [incident]
    assert incident.linked_conversation_id == first.id
    assert incident.related_conversation_ids == [second.id]
    assert incident.status_history[-1][0] is IncidentStatus.EN_ROUTE
    assert len(incident.status_history) == 2


def test_earliest_dispatch_wins():
    correlator = _correlator()
    later = correlator.on_dispatch_event("Medic 12 respond", T0 + timedelta(minutes=10), SCENE)
    earlier = correlator.on_dispatch_event("Medic 12 respond", T0 - timedelta(minutes=10), SCENE)

    correlator.on_conversation_update(_conversation("Medic 12 inbound", 32))
    assert earlier.status is IncidentStatus.EN_ROUTE
    assert later.status is IncidentStatus.DISPATCHED


def test_same_dispatch_time_breaks_tie_on_id():
    correlator = _correlator()
    first = correlator.on_dispatch_event("Medic 12 respond", T0, SCENE)
    second = correlator.on_dispatch_event("Medic 12 respond", T0, SCENE)

    correlator.on_conversation_update(_conversation("Medic 12 inbound", 5))
    assert first.status is IncidentStatus.EN_ROUTE
    assert second.status is IncidentStatus.DISPATCHED


def test_dispatch_outside_window_not_linked():
    correlator = _correlator()
    correlator.on_dispatch_event("Medic 12 respond", T0, SCENE)
    correlator.on_dispatch_event("Medic 12 respond", T0 + timedelta(minutes=90), SCENE)

    assert correlator.on_conversation_update(_conversation("Medic 12 inbound", 61)) == []


def test_other_unit_or_no_unit_not_linked():
    correlator = _correlator()
    correlator.on_dispatch_event("Medic 12 respond", T0, SCENE)
    assert correlator.on_conversation_update(_conversation("Medic 3 inbound", 5)) == []
    assert correlator.on_conversation_update(_conversation("patient stable", 6)) == []


def test_distance_failure_falls_back_to_heuristic():
    correlator = _correlator(distance=FailingDistance())
    incident = correlator.on_dispatch_event(
        "Medic 12 respond", T0, Location(35.2, -80.8, "I-85 northbound at exit 30")
    )
    correlator.on_conversation_update(_conversation("Medic 12 inbound", 5))

    assert incident.status is IncidentStatus.EN_ROUTE
    assert incident.distance_miles is None
    assert incident.eta_minutes == 12


def test_unknown_facility_uses_heuristic():
    correlator = _correlator()
    incident = correlator.on_dispatch_event("Medic 12 respond", T0, SCENE)
    correlator.on_conversation_update(_conversation("Medic 12 inbound", 5, channel="other"))

    assert incident.status is IncidentStatus.EN_ROUTE
    assert incident.facility_name is None
    assert incident.eta_minutes == 8


def test_mark_at_facility_and_monotonic_history():
    correlator = _correlator()
    incident = correlator.on_dispatch_event("Medic 12 respond", T0, SCENE)
    correlator.on_conversation_update(_conversation("Medic 12 inbound", 5))

    correlator.mark_at_facility(incident.id, T0 + timedelta(minutes=12))
    assert incident.status is IncidentStatus.AT_FACILITY
    with pytest.raises(InvalidTransition):
        correlator.mark_at_facility(incident.id, T0 + timedelta(minutes=13))
    with pytest.raises(InvalidTransition):
        incident.transition(IncidentStatus.EN_ROUTE, T0 + timedelta(minutes=14))

    ranks = [status.rank for status, _ in incident.status_history]
    assert ranks == sorted(ranks)
    assert len(set(ranks)) == len(ranks)


def test_completed_incident_is_terminal():
    correlator = _correlator()
    incident = correlator.on_dispatch_event("Medic 12 respond", T0, SCENE)
    incident.transition(IncidentStatus.COMPLETED, T0 + timedelta(minutes=30))
    assert incident.is_terminal
    with pytest.raises(InvalidTransition):
        incident.transition(IncidentStatus.COMPLETED, T0 + timedelta(minutes=31))
    assert correlator.on_conversation_update(_conversation("Medic 12 inbound", 32)) == []


def test_determine_priority():
    assert determine_priority("Medic 4 cardiac arrest") == "critical"
    assert determine_priority("MVC with injuries") == "high"
    assert determine_priority("welfare check") == "low"
    assert determine_priority("fall") == "medium"
    assert determine_priority(None) == "medium"


def test_dispatch_with_known_unit_id():
    correlator = _correlator()
    incident = correlator.on_dispatch_event("respond to 400 Oak St", T0, SCENE, unit_id="Medic 12")
    assert incident.unit_id == "Medic 12"
    correlator.on_conversation_update(_conversation("Medic 12 inbound", 5))
    assert incident.status is IncidentStatus.EN_ROUTE
