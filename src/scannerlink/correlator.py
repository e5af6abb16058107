"""Dispatch-to-hospital correlation and incident tracking."""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from .clock import SystemClock
from .config import CorrelatorConfig
from .distance import DistanceResult, estimate_eta, heuristic_eta
from .locks import EntityLocks
from .models import Conversation, Facility, Incident, IncidentStatus, Location
from .units import extract_unit, same_unit

logger = logging.getLogger("scannerlink")

LINKABLE = (IncidentStatus.DISPATCHED, IncidentStatus.EN_ROUTE)

CRITICAL_TERMS = ("cardiac arrest", "gsw", "major trauma")
HIGH_TERMS = ("trauma", "mvc", "overdose")
LOW_TERMS = ("investigation", "welfare check", "sick person")


def determine_priority(call_text: Optional[str]) -> str:
    if not call_text:
        return "medium"
    lowered = call_text.lower()
    if any(term in lowered for term in CRITICAL_TERMS):
        return "critical"
    if any(term in lowered for term in HIGH_TERMS):
        return "high"
    if any(term in lowered for term in LOW_TERMS):
        return "low"
    return "medium"


class IncidentCorrelator:
    """Create incidents from dispatch traffic and link hospital conversations.

    Matching only reads the incident table. Every write to an incident is
    made while holding that incident's lock from ``self.locks``.
    """

    def __init__(
        self,
        config: Optional[CorrelatorConfig] = None,
        facilities: Optional[Dict[str, Facility]] = None,
        distance=None,
        clock=None,
    ) -> None:
        self.config = config or CorrelatorConfig()
        self.facilities = facilities or {}
        self.distance = distance
        self.clock = clock or SystemClock()
        self.locks = EntityLocks()
        self._incidents: Dict[int, Incident] = {}
        self._links: Dict[str, int] = {}
        self._next_id = 1
        self._table_lock = threading.Lock()

    def get(self, incident_id: int) -> Incident:
        return self._incidents[incident_id]

    def incidents(self) -> List[Incident]:
        return sorted(self._incidents.values(), key=lambda inc: inc.id)

    def incident_for_conversation(self, conversation_id: str) -> Optional[Incident]:
        incident_id = self._links.get(conversation_id)
        return self._incidents.get(incident_id) if incident_id else None

    def on_dispatch_event(
        self,
        text: str,
        time: datetime,
        location: Optional[Location] = None,
        unit_id: Optional[str] = None,
    ) -> Optional[Incident]:
        unit_id = unit_id or extract_unit(text)
        if unit_id is None:
            logger.debug("No unit in dispatch traffic: %r", (text or "")[:80])
            return None

        location = location or Location()
        with self._table_lock:
            incident_id = self._next_id
            self._next_id += 1
            incident = Incident(
                id=incident_id,
                unit_id=unit_id,
                dispatch_time=time,
                eta_minutes=heuristic_eta(location.description),
                dispatch_location=location,
                priority=determine_priority(text),
                call_text=text,
                status_history=[(IncidentStatus.DISPATCHED, time)],
            )
            self._incidents[incident_id] = incident
        logger.info("Created incident %s for %s (%s priority)", incident_id, unit_id, incident.priority)
        return incident

    def _candidates(self, unit_id: str, anchor: datetime) -> List[Incident]:
        earliest = anchor - timedelta(minutes=self.config.lookback_minutes)
        latest = anchor + timedelta(minutes=self.config.lookahead_minutes)
        matches = [
            inc
            for inc in list(self._incidents.values())
            if inc.status in LINKABLE
            and same_unit(inc.unit_id, unit_id)
            and earliest <= inc.dispatch_time <= latest
        ]
        return sorted(matches, key=lambda inc: (inc.dispatch_time, inc.id))

    def on_conversation_update(self, conversation: Conversation) -> List[Incident]:
        if conversation.id in self._links:
            return []
        unit_id = extract_unit(conversation.text())
        if unit_id is None:
            return []

        for incident in self._candidates(unit_id, conversation.window_start):
            with self.locks.lock_for(incident.id):
                if incident.status not in LINKABLE:
                    continue
                if incident.linked_conversation_id is None:
                    self._link(incident, conversation)
                else:
                    incident.related_conversation_ids.append(conversation.id)
                    logger.info(
                        "Conversation %s also concerns incident %s", conversation.id, incident.id
                    )
            with self._table_lock:
                self._links[conversation.id] = incident.id
            return [incident]

        logger.debug("No open incident for %s near %s", unit_id, conversation.window_start)
        return []

    def _link(self, incident: Incident, conversation: Conversation) -> None:
        facility = self.facilities.get(conversation.channel_key)
        incident.linked_conversation_id = conversation.id
        incident.en_route_time = conversation.window_start
        if facility is not None:
            incident.facility_name = facility.name

        result = self._lookup_distance(incident, facility)
        if result is not None:
            incident.distance_miles = result.distance_miles
            incident.eta_minutes = estimate_eta(
                result.distance_miles,
                self.config.average_speed_mph,
                self.config.loading_allowance_minutes,
            )
        else:
            incident.eta_minutes = heuristic_eta(incident.dispatch_location.description)

        incident.transition(IncidentStatus.EN_ROUTE, self.clock.now())
        logger.info(
            "Incident %s (%s) linked to %s, en route to %s, ETA %s min",
            incident.id,
            incident.unit_id,
            conversation.id,
            incident.facility_name or "unknown facility",
            incident.eta_minutes,
        )

    def _lookup_distance(
        self, incident: Incident, facility: Optional[Facility]
    ) -> Optional[DistanceResult]:
        if self.distance is None or facility is None:
            return None
        try:
            return self.distance.lookup(incident.dispatch_location, facility)
        except Exception as exc:
            logger.warning("Distance lookup for incident %s failed: %s", incident.id, exc)
            return None

    def mark_at_facility(self, incident_id: int, at: Optional[datetime] = None) -> Incident:
        incident = self._incidents[incident_id]
        with self.locks.lock_for(incident_id):
            incident.transition(IncidentStatus.AT_FACILITY, at or self.clock.now())
        logger.info("Incident %s at facility", incident_id)
        return incident
