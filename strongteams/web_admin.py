from __future__ import annotations

import logging
import os
from datetime import timedelta
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, Field

from strongteams.assessment_client import AssessmentLinkClient
from strongteams.config_manager import ConfigManager
from strongteams.engine import build_engine
from strongteams.errors import LedgerUnavailableError
from strongteams.ledger import ProcessedEventsTracker
from strongteams.models import BatchResult
from strongteams.notifier import EmailNotifier
from strongteams.scheduler import BatchScheduler

logger = logging.getLogger(__name__)

PAY_LATER_COUPON = "paylater"


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class PruneRequest(BaseModel):
    retention_days: int | None = Field(default=None, ge=1)


class ResetRequest(BaseModel):
    confirm: bool = False


class AppContext:
    def __init__(self, config_path: str, ledger_path: str | None = None) -> None:
        self.config_manager = ConfigManager(config_path)
        config = self.config_manager.load()
        self.ledger = ProcessedEventsTracker(ledger_path or config.ledger.path)
        self.scheduler = BatchScheduler(self.run_batch, self.config_manager)

    def run_batch(self, trigger: str) -> BatchResult:
        config = self.config_manager.load()
        return build_engine(config, self.ledger).run_once(trigger=trigger)

    def send_pay_later_notice(self, session: dict[str, Any]) -> bool:
        config = self.config_manager.load()
        return EmailNotifier(config.email).notify_pay_later(session)


def is_pay_later_checkout(session: dict[str, Any]) -> bool:
    """A zero-total checkout paid with a promotion code or the pay-later coupon."""
    if session.get("amount_total") != 0:
        return False
    for discount in session.get("discounts") or []:
        if not isinstance(discount, dict):
            continue
        if discount.get("promotion_code"):
            return True
        coupon = discount.get("coupon") or {}
        if isinstance(coupon, dict) and str(coupon.get("id") or "").lower() == PAY_LATER_COUPON:
            return True
    return False


def create_app() -> FastAPI:
    config_path = os.getenv("STRONGTEAMS_CONFIG_PATH", "config.yaml")
    ledger_path = os.getenv("STRONGTEAMS_LEDGER_PATH") or None
    context = AppContext(config_path=config_path, ledger_path=ledger_path)

    app = FastAPI(title="Strong Teams Automation Admin", version="0.1.0")
    app.state.context = context

    @app.on_event("startup")
    def _startup() -> None:
        app.state.context.scheduler.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.context.scheduler.stop()

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.masked()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        app.state.context.config_manager.update(request.payload)
        return {
            "message": "config updated",
            "config": app.state.context.config_manager.masked(),
        }

    @app.post("/api/assessment/test")
    def test_assessment_api() -> dict[str, Any]:
        config = app.state.context.config_manager.load()
        ok, message = AssessmentLinkClient(config.assessment_api).test_connectivity()
        return {"ok": ok, "message": message}

    @app.get("/api/ledger/stats")
    def ledger_stats() -> dict[str, Any]:
        return app.state.context.ledger.stats().to_dict()

    @app.get("/api/ledger/records")
    def ledger_records(limit: int = 100) -> dict[str, Any]:
        return {"records": [record.to_dict() for record in app.state.context.ledger.records(limit=limit)]}

    @app.get("/api/ledger/lookup")
    def ledger_lookup(email: str, name: str | None = None) -> dict[str, Any]:
        record = app.state.context.ledger.find_by_email(email, name)
        if record is None:
            raise HTTPException(status_code=404, detail="no ledger record with a Build File for this email")
        return {"record": record.to_dict()}

    @app.post("/api/ledger/prune")
    def ledger_prune(request: PruneRequest) -> dict[str, Any]:
        retention_days = request.retention_days or app.state.context.config_manager.load().ledger.retention_days
        try:
            deleted = app.state.context.ledger.prune_older_than(timedelta(days=retention_days))
        except LedgerUnavailableError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        return {"deleted": deleted, "retention_days": retention_days}

    @app.post("/api/ledger/reset")
    def ledger_reset(request: ResetRequest) -> dict[str, Any]:
        if not request.confirm:
            raise HTTPException(status_code=400, detail="reset requires confirm=true")
        try:
            deleted = app.state.context.ledger.reset()
        except LedgerUnavailableError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        return {"deleted": deleted}

    @app.get("/api/runs")
    def recent_runs(limit: int = 20) -> dict[str, Any]:
        return {"runs": app.state.context.ledger.recent_batch_runs(limit=limit)}

    @app.post("/api/sync/run")
    def trigger_sync() -> dict[str, str]:
        app.state.context.scheduler.trigger_manual()
        return {"message": "sync triggered"}

    @app.post("/webhooks/stripe")
    async def stripe_webhook(request: Request) -> dict[str, str]:
        try:
            payload = await request.json()
            event_type = payload.get("type")
            logger.info("Stripe webhook received: %s", event_type)
            if event_type == "checkout.session.completed":
                session = (payload.get("data") or {}).get("object") or {}
                if is_pay_later_checkout(session):
                    await run_in_threadpool(app.state.context.send_pay_later_notice, session)
        except (ValueError, AttributeError, TypeError) as exc:
            logger.warning("Stripe webhook error: %s", exc)
            return {"status": "error", "message": str(exc)}
        return {"status": "success"}

    return app
