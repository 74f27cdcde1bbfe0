"""
Deposit audit (reconciliation) admin endpoints.
"""
import time
from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy import func
from sqlalchemy.orm import Session
from postback_relay.api.deps import get_audit_scheduler, get_db, get_reconciliation_engine, get_services
from postback_relay.config import ATTRIBUTION_SETTINGS, BACKOFF_POLICY, validate_channel_configuration
from postback_relay.exceptions import AttributionLookupError, ReconciliationError
from postback_relay.jobs.audit_scheduler import AuditScheduler
from postback_relay.models.db import Subscriber
from postback_relay.models.db.enums import SubscriberStatus
from postback_relay.models.schemas.audit import AuditPeriodRequest
from postback_relay.models.schemas.base import ResponseBase
from postback_relay.services.reconciliation_engine import ReconciliationEngine
from postback_relay.services.registry import Services
from postback_relay.utils import get_logger, log_business_event, log_performance

router = APIRouter()
logger = get_logger(__name__)

@router.post(
    "/run",
    response_model=ResponseBase,
    summary="Run a deposit audit for a period"
)
async def run_audit(
    period: AuditPeriodRequest,
    request: Request,
    scheduler: AuditScheduler = Depends(get_audit_scheduler)
) -> ResponseBase:
    start_time = time.time()
    request_id = getattr(request.state, "request_id", None)
    logger.info(
        "Manual audit triggered",
        date_from=period.date_from.isoformat(),
        date_to=period.date_to.isoformat(),
        request_id=request_id
    )
    try:
        report = await scheduler.run_manual_audit(period.date_from, period.date_to)
    except ReconciliationError as e:
        logger.error("Manual audit failed", error=str(e), request_id=request_id)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Audit failed: {e}"
        )

    log_business_event(
        "manual_audit",
        {"audit_id": report.audit_id, "missing": report.missing_count},
        request_id=request_id
    )
    log_performance("manual_audit_endpoint", (time.time() - start_time) * 1000)
    return ResponseBase(
        message=f"Audit completed: {report.missing_count} missing of {report.target_channel_count}",
        data=report.model_dump(mode="json")
    )

@router.get(
    "/conversions/{identifier}",
    response_model=ResponseBase,
    summary="Audit a single conversion identifier"
)
async def audit_conversion(
    identifier: str,
    engine: ReconciliationEngine = Depends(get_reconciliation_engine)
) -> ResponseBase:
    try:
        result = await engine.audit_identifier(identifier)
    except ReconciliationError as e:
        logger.error("Identifier audit failed", identifier=identifier, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Audit failed: {e}"
        )
    return ResponseBase(message=result.status, data=result.model_dump(mode="json"))

@router.get(
    "/scheduler",
    response_model=ResponseBase,
    summary="Audit scheduler status and recent history"
)
async def scheduler_stats(
    scheduler: AuditScheduler = Depends(get_audit_scheduler)
) -> ResponseBase:
    return ResponseBase(data=scheduler.get_stats())

@router.get(
    "/channels",
    response_model=ResponseBase,
    summary="Channel classification and configuration check"
)
async def channel_configuration(
    services: Services = Depends(get_services)
) -> ResponseBase:
    report = validate_channel_configuration()
    return ResponseBase(
        success=bool(report["valid"]),
        message="Channel configuration valid" if report["valid"] else "Channel configuration has errors",
        data={"channels": services.channels.as_dict(), "validation": report}
    )

@router.get(
    "/fallback",
    response_model=ResponseBase,
    summary="Fallback attribution and dedup configuration"
)
async def fallback_configuration(
    services: Services = Depends(get_services)
) -> ResponseBase:
    return ResponseBase(
        data={
            "fallback_sources": services.fallback.as_dict(),
            "dedup_cache": services.dedup.stats(),
            "retry": {
                "indexing_delay_seconds": ATTRIBUTION_SETTINGS["indexing_delay_seconds"],
                "lookup_timeout_seconds": ATTRIBUTION_SETTINGS["lookup_timeout_seconds"],
                "max_attempts": BACKOFF_POLICY["max_attempts"],
            },
        }
    )

@router.get(
    "/subscribers",
    response_model=ResponseBase,
    summary="Notification subscriber counts by status"
)
async def subscriber_summary(
    db: Session = Depends(get_db)
) -> ResponseBase:
    rows = (
        db.query(Subscriber.status, func.count(Subscriber.id))
        .group_by(Subscriber.status)
        .all()
    )
    counts = {s.value: 0 for s in SubscriberStatus}
    for status_value, count in rows:
        key = status_value.value if isinstance(status_value, SubscriberStatus) else str(status_value)
        counts[key] = count
    return ResponseBase(
        message=f"{counts[SubscriberStatus.APPROVED.value]} active subscribers",
        data={"by_status": counts, "total": sum(counts.values())}
    )

@router.get(
    "/traffic-sources",
    response_model=ResponseBase,
    summary="Tracking platform traffic sources with local classification"
)
async def traffic_sources(
    services: Services = Depends(get_services)
) -> ResponseBase:
    try:
        sources = await services.keitaro.get_traffic_sources()
    except AttributionLookupError as e:
        logger.error("Traffic source listing failed", error=str(e), reason=e.reason)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Tracking platform error: {e}"
        )
    data = [
        {
            **source.model_dump(),
            "is_target": services.channels.is_target_channel(source.id),
            "has_fallback": services.fallback.has_mapping_for_channel(source.id),
        }
        for source in sources
    ]
    return ResponseBase(message=f"{len(data)} traffic sources", data={"sources": data})
