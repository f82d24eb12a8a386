"""FastAPI application: widget endpoints, dashboard reads and background job scheduling."""

import json
import os
from typing import List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from leadcapture import jobs, monitoring
from leadcapture.agents import insights
from leadcapture.auth import DashboardAuthMiddleware, dashboard_customer, widget_customer
from leadcapture.db import Customer, init_db
from leadcapture.errors import InputValidationError, PersistenceError
from leadcapture.schemas import (
    HotLeadOut,
    MetricsOut,
    ReferralRequest,
    ReferralResponse,
    SummaryOut,
    WidgetMessageResponse,
    parse_widget_message,
)
from leadcapture.services import Services, build_services
from leadcapture.settings import FollowUpSettings

API_PORT = int(os.getenv("API_PORT", "8000"))

monitoring.init_monitoring()

scheduler = AsyncIOScheduler()


def _services(request: Request) -> Services:
    return request.app.state.services


def _schedule_jobs(app: FastAPI, sched: Optional[AsyncIOScheduler] = None) -> AsyncIOScheduler:
    """Register the periodic jobs as coroutine functions so they run on the app's event loop."""
    sched = sched or scheduler
    services = app.state.services
    sweep_minutes = FollowUpSettings.from_env().sweep_interval_minutes
    if not sched.running:
        sched.start()
    if not sched.get_job("ghost-buster"):
        sched.add_job(jobs.run_sweep, "interval", minutes=sweep_minutes, args=[services], id="ghost-buster")
    if not sched.get_job("weekly-digest"):
        # hourly on Mondays; the worker checks each tenant's local office hours
        sched.add_job(
            jobs.run_weekly_digests,
            "cron",
            day_of_week="mon",
            minute=0,
            args=[services],
            id="weekly-digest",
        )
    if not sched.get_job("lead-retention"):
        sched.add_job(jobs.tombstone_expired_leads, "cron", hour=3, minute=0, args=[services], id="lead-retention")
    return sched


def create_app(services: Optional[Services] = None) -> FastAPI:
    app = FastAPI(title="LeadCapture API")
    app.state.services = services
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(DashboardAuthMiddleware, protected_prefixes={"/api/v1/dashboard"})

    @app.on_event("startup")
    async def on_startup():
        await init_db()
        if app.state.services is None:
            app.state.services = build_services()
        _schedule_jobs(app)

    @app.on_event("shutdown")
    async def on_shutdown():
        if scheduler.running:
            scheduler.shutdown(wait=False)
        if app.state.services is not None:
            await app.state.services.engine.drain()

    @app.exception_handler(InputValidationError)
    async def invalid_input(request: Request, exc: InputValidationError):
        details = [{"field": exc.field, "message": str(exc)}] if exc.field else None
        return JSONResponse(
            {"error": str(exc), "code": "invalid_request", "details": details},
            status_code=400,
        )

    @app.exception_handler(PersistenceError)
    async def storage_unavailable(request: Request, exc: PersistenceError):
        monitoring.capture_exception(exc, path=request.url.path)
        return JSONResponse({"error": "Service temporarily unavailable", "code": "unavailable"}, status_code=503)

    @app.get("/healthz")
    async def health_check():
        return {"status": "ok"}

    @app.post("/api/v1/widget/message", response_model=WidgetMessageResponse)
    async def widget_message(request: Request, customer: Customer = Depends(widget_customer)):
        """Run one visitor turn through the conversation engine.

        The payload is validated before the session budget is charged, so a
        malformed request never costs the visitor a message.
        """
        try:
            payload = await request.json()
        except json.JSONDecodeError as exc:
            raise InputValidationError("Request body must be valid JSON") from exc
        message = parse_widget_message(payload)

        services = _services(request)
        decision = await services.session_counter.hit(
            customer.id,
            message.session_id,
            customer.rate_limit_messages_per_session,
        )
        if not decision.allowed:
            return JSONResponse(
                {
                    "error": "Message limit reached for this session",
                    "code": "rate_limited",
                    "details": [{"count": decision.count, "limit": decision.limit}],
                },
                status_code=429,
            )

        result = await services.engine.process_message(customer, message)
        return result.to_response()

    @app.post("/api/v1/widget/referral", response_model=ReferralResponse)
    async def widget_referral(
        payload: ReferralRequest,
        request: Request,
        customer: Customer = Depends(widget_customer),
    ):
        result = await _services(request).engine.confirm_partner_referral(customer, payload.lead_id)
        if not result.success and result.message == "Lead not found":
            raise HTTPException(status_code=404, detail=result.message)
        return ReferralResponse(success=result.success, message=result.message)

    @app.get("/api/v1/dashboard/metrics", response_model=MetricsOut)
    async def dashboard_metrics(
        request: Request,
        period: str = "week",
        customer: Customer = Depends(dashboard_customer),
    ):
        metrics = _services(request).metrics
        if period == "day":
            return await metrics.daily_metrics(customer.id)
        if period == "week":
            return await metrics.weekly_metrics(customer.id)
        raise InputValidationError("period must be 'day' or 'week'", field="period")

    @app.get("/api/v1/dashboard/summary", response_model=SummaryOut)
    async def dashboard_summary(request: Request, customer: Customer = Depends(dashboard_customer)):
        """Last 24 hours of metrics and hot leads with a model-written briefing on top."""
        services = _services(request)
        return await insights.daily_briefing(services.gateway, services.metrics, customer)

    @app.get("/api/v1/dashboard/hot-leads", response_model=List[HotLeadOut])
    async def dashboard_hot_leads(
        request: Request,
        limit: int = 5,
        customer: Customer = Depends(dashboard_customer),
    ):
        return await _services(request).metrics.hot_leads(customer.id, limit=max(1, min(limit, 50)))

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("leadcapture.main:app", host="0.0.0.0", port=API_PORT)
