from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Protocol

from strongteams.assessment_client import AssessmentLinkClient
from strongteams.caldav_client import CalDAVService
from strongteams.drive_store import DriveArtifactStore
from strongteams.errors import ExtractionError, LedgerUnavailableError
from strongteams.extraction import extract_lead_info
from strongteams.ledger import ProcessedEventsTracker
from strongteams.models import (
    AppConfig,
    BatchResult,
    EventRecord,
    LeadInfo,
    Phase,
    monitoring_window,
    parse_iso_datetime,
)
from strongteams.notifier import EmailNotifier
from strongteams.phases import PhaseProcessor, classify_event

logger = logging.getLogger(__name__)

LAST_PRUNE_META_KEY = "last_prune_at"


class EventSource(Protocol):
    def list_events(self, start: datetime, end: datetime) -> list[EventRecord]: ...


class AutomationEngine:
    def __init__(
        self,
        config: AppConfig,
        ledger: ProcessedEventsTracker,
        calendar: EventSource,
        processor: PhaseProcessor,
        notifier: EmailNotifier,
    ) -> None:
        self.config = config
        self.ledger = ledger
        self.calendar = calendar
        self.processor = processor
        self.notifier = notifier

    def run_once(self, trigger: str = "manual", now: datetime | None = None) -> BatchResult:
        """Process every classified event in the monitoring window once.

        A failure inside one event is reported and counted, and the batch
        moves on. A ledger write failure also marks the run ``error``, as
        does a failure to read the calendar.
        """
        started_at = datetime.now(timezone.utc)
        now = now or started_at
        result = BatchResult(status="success", message="", duration_ms=0, trigger=trigger, run_at=started_at)
        run_id = self._start_run(trigger)

        try:
            window_start, window_end = monitoring_window(
                now, self.config.calendar.lookback_hours, self.config.calendar.lookahead_hours
            )
            logger.info("Checking events from %s to %s", window_start.isoformat(), window_end.isoformat())
            events = self.calendar.list_events(window_start, window_end)
            for event in events:
                self._process_event(event, result)
            self._prune_if_due(now)
            result.message = (
                f"Checked {len(events)} events: {result.processed} processed, "
                f"{result.already_processed} already processed, {result.skipped} skipped, "
                f"{result.errors} errors."
            )
        except Exception as exc:
            logger.exception("Batch run failed")
            result.status = "error"
            result.message = f"{type(exc).__name__}: {exc}"

        result.duration_ms = int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000)
        self._finish_run(run_id, result)
        log = logger.error if result.status == "error" else logger.info
        log("Batch summary: %s", result.message, extra={"batch": result.to_dict()})
        return result

    def _process_event(self, event: EventRecord, result: BatchResult) -> None:
        phase = classify_event(event, self.config)
        if phase is None:
            result.skipped += 1
            return

        row_ref: str | None = None
        if self.config.ledger.enabled:
            status = self.ledger.is_processed(event)
            if status.processed:
                result.already_processed += 1
                return
            if status.needs_update:
                row_ref = status.row_ref

        logger.info("Processing %s event: %s", phase.value, event.summary or event.event_id)
        try:
            if phase is Phase.PHASE_1:
                outcome = self.processor.process_phase1(event)
                self.ledger.mark_processed(
                    event,
                    phase,
                    outcome.lead,
                    row_ref,
                    build_artifact_id=outcome.artifact.artifact_id,
                    build_folder_id=outcome.artifact.folder_id,
                )
            else:
                lead = self.processor.process_phase2(event)
                self.ledger.mark_processed(event, phase, lead, row_ref)
        except LedgerUnavailableError as exc:
            logger.exception("Could not record event %s (%s) in the ledger", event.summary, event.event_id)
            self.notifier.notify_failure(event, self._lead_for_report(event), exc)
            result.errors += 1
            result.status = "error"
            return
        except Exception as exc:
            logger.exception("Error processing event %s (%s)", event.summary, event.event_id)
            self.notifier.notify_failure(event, self._lead_for_report(event), exc)
            result.errors += 1
            return

        result.processed += 1
        if phase is Phase.PHASE_1:
            self.notifier.notify_success(outcome.lead, outcome.artifact)

    def _lead_for_report(self, event: EventRecord) -> LeadInfo | None:
        try:
            return extract_lead_info(event, self.config.calendar.timezone)
        except ExtractionError:
            return None

    def _prune_if_due(self, now: datetime) -> None:
        interval = timedelta(hours=self.config.ledger.prune_interval_hours)
        last_prune = parse_iso_datetime(self.ledger.get_meta(LAST_PRUNE_META_KEY))
        if last_prune is not None and now - last_prune < interval:
            return
        self.ledger.prune_older_than(timedelta(days=self.config.ledger.retention_days), now=now)
        self.ledger.set_meta(LAST_PRUNE_META_KEY, now.isoformat())

    def _start_run(self, trigger: str) -> int | None:
        try:
            return self.ledger.start_batch_run(trigger=trigger)
        except LedgerUnavailableError as exc:
            logger.error("Could not record batch run start: %s", exc)
            return None

    def _finish_run(self, run_id: int | None, result: BatchResult) -> None:
        if run_id is None:
            return
        try:
            self.ledger.finish_batch_run(
                run_id=run_id,
                status=result.status,
                message=result.message,
                duration_ms=result.duration_ms,
                processed=result.processed,
                already_processed=result.already_processed,
                skipped=result.skipped,
                errors=result.errors,
            )
        except LedgerUnavailableError as exc:
            logger.error("Could not record batch run result: %s", exc)


def build_engine(config: AppConfig, ledger: ProcessedEventsTracker) -> AutomationEngine:
    processor = PhaseProcessor(
        config,
        DriveArtifactStore(config.drive),
        AssessmentLinkClient(config.assessment_api),
        ledger,
    )
    return AutomationEngine(
        config,
        ledger,
        CalDAVService(config.calendar),
        processor,
        EmailNotifier(config.email),
    )
