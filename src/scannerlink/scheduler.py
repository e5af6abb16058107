"""Time-driven state sweep for conversations and incidents."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from .assembler import ConversationAssembler
from .clock import SystemClock
from .config import SchedulerConfig
from .correlator import IncidentCorrelator
from .models import IncidentStatus

logger = logging.getLogger("scannerlink")

TIMED = (
    IncidentStatus.EN_ROUTE,
    IncidentStatus.ARRIVING_SHORTLY,
    IncidentStatus.AT_FACILITY,
)


@dataclass
class SweepReport:
    at: datetime
    closed_conversations: List[str] = field(default_factory=list)
    transitions: List[Tuple[int, IncidentStatus]] = field(default_factory=list)
    failures: int = 0
    skipped: bool = False


class LifecycleScheduler:
    def __init__(
        self,
        assembler: ConversationAssembler,
        correlator: IncidentCorrelator,
        config: Optional[SchedulerConfig] = None,
        clock=None,
        on_report=None,
    ) -> None:
        self.assembler = assembler
        self.correlator = correlator
        self.config = config or SchedulerConfig()
        self.clock = clock or SystemClock()
        self.on_report = on_report
        self._sweep_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def sweep(self, now: Optional[datetime] = None) -> SweepReport:
        now = now or self.clock.now()
        report = SweepReport(at=now)
        if not self._sweep_lock.acquire(blocking=False):
            logger.warning("Lifecycle sweep still running; skipping tick at %s", now)
            report.skipped = True
            return report
        try:
            for conv in self.assembler.open_conversations():
                try:
                    if self.assembler.close_if_inactive(conv.id, now):
                        report.closed_conversations.append(conv.id)
                except Exception as exc:
                    report.failures += 1
                    logger.warning("Sweep failed for conversation %s: %s", conv.id, exc)

            for incident in self.correlator.incidents():
                if incident.status not in TIMED:
                    continue
                try:
                    for status in self.advance_incident(incident.id, now):
                        report.transitions.append((incident.id, status))
                except Exception as exc:
                    report.failures += 1
                    logger.warning("Sweep failed for incident %s: %s", incident.id, exc)
        finally:
            self._sweep_lock.release()

        if report.closed_conversations or report.transitions:
            logger.info(
                "Sweep at %s closed %d conversation(s), applied %d transition(s)",
                now.isoformat(),
                len(report.closed_conversations),
                len(report.transitions),
            )
        if self.on_report is not None:
            self.on_report(report)
        return report

    def advance_incident(self, incident_id: int, now: datetime) -> List[IncidentStatus]:
        incident = self.correlator.get(incident_id)
        applied: List[IncidentStatus] = []
        with self.correlator.locks.lock_for(incident_id):
            if incident.status not in TIMED:
                return applied
            arrival = incident.eta_anchor + timedelta(minutes=incident.eta_minutes)
            completion = arrival + timedelta(minutes=self.config.completion_grace_minutes)
            if incident.status is IncidentStatus.EN_ROUTE and now >= arrival:
                incident.transition(IncidentStatus.ARRIVING_SHORTLY, now)
                applied.append(IncidentStatus.ARRIVING_SHORTLY)
            if now >= completion:
                incident.transition(IncidentStatus.COMPLETED, now)
                applied.append(IncidentStatus.COMPLETED)
        for status in applied:
            logger.info("Incident %s moved to %s", incident_id, status.value)
        return applied

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="lifecycle-sweep", daemon=True)
        self._thread.start()
        logger.info("Lifecycle scheduler started (every %ss)", self.config.period_seconds)

    def _run(self) -> None:
        while True:
            try:
                self.sweep()
            except Exception:
                logger.exception("Lifecycle sweep crashed")
            if self._stop_event.wait(self.config.period_seconds):
                break

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
            logger.info("Lifecycle scheduler stopped")
