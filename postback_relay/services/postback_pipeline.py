"""Postback intake pipeline.

Stages, in order::

    RECEIVED -> VALIDATED -> CLASSIFIED -> DEDUP_CHECKED -> LOOKED_UP
             -> DELIVERED | FALLBACK_DELIVERED | IGNORED | FAILED

Each stage is a step that either advances the shared run context or returns a
terminal ``PipelineResult``. When the tracking platform has no conversion yet,
the run waits ``indexing_delay_seconds`` (non-blocking) and looks up exactly
once more before trying fallback attribution from the postback source token.

Only malformed input fails loudly; attribution outages are ignored and
delivery failures are reported as FAILED results without raising. Anything
unexpected is caught at the ``process`` boundary, logged and forwarded to
operators.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Optional, Protocol

from pydantic import ValidationError as PydanticValidationError

from postback_relay.config import ATTRIBUTION_SETTINGS, AUDIT_SETTINGS
from postback_relay.exceptions import AttributionLookupError, DeliveryError, ValidationError
from postback_relay.models.db.enums import (
    FailureReason,
    IgnoreReason,
    PipelineOutcome,
    PipelineStage,
    StatusDecision,
)
from postback_relay.models.schemas.attribution import ConversionRecord
from postback_relay.models.schemas.postback import PostbackEvent
from postback_relay.services.alerting import OperatorNotifier, format_delivery_failure, format_internal_error
from postback_relay.services.channel_classifier import ChannelClassifier
from postback_relay.services.dedup_cache import DedupCache, ReserveResult
from postback_relay.services.delivery_dispatcher import DeliveryDispatcher, DeliveryPayload, DeliveryReport
from postback_relay.services.fallback_resolver import FallbackBinding, FallbackResolver
from postback_relay.services.status_classifier import classify_status
from postback_relay.utils import get_logger, log_business_event, log_performance

logger = get_logger(__name__)

IDENTIFIER_KEYS = ("identifier", "subid", "sub_id")


class AttributionSource(Protocol):
    async def lookup(self, identifier: str) -> Optional[ConversionRecord]: ...


@dataclass
class PipelineResult:
    outcome: PipelineOutcome
    stage: PipelineStage
    message: str
    identifier: str | None = None
    reason: str | None = None
    delivery: DeliveryReport | None = None
    error: Exception | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def delivered(self) -> bool:
        return self.outcome in (PipelineOutcome.DELIVERED, PipelineOutcome.FALLBACK_DELIVERED)

    @property
    def is_validation_failure(self) -> bool:
        return self.outcome == PipelineOutcome.FAILED and self.reason == FailureReason.VALIDATION.value


@dataclass
class _RunContext:
    raw: Mapping[str, Any]
    request_id: str | None
    stage: PipelineStage = PipelineStage.RECEIVED
    event: PostbackEvent | None = None
    reserved: bool = False
    delivered: bool = False
    record: ConversionRecord | None = None
    binding: FallbackBinding | None = None
    lookups: int = 0

    @property
    def identifier(self) -> str | None:
        if self.event is not None:
            return self.event.identifier
        for key in IDENTIFIER_KEYS:
            value = self.raw.get(key)
            if value:
                return str(value)
        return None


def _validation_details(exc: PydanticValidationError) -> list[dict[str, Any]]:
    return [
        {
            "field": ".".join(str(p) for p in err.get("loc", ())) or "body",
            "message": err.get("msg", "invalid value"),
            "type": err.get("type", "value_error"),
        }
        for err in exc.errors()
    ]


class PostbackPipeline:
    def __init__(
        self,
        *,
        attribution: AttributionSource,
        channels: ChannelClassifier,
        fallback: FallbackResolver,
        dedup: DedupCache,
        dispatcher: DeliveryDispatcher,
        notifier: OperatorNotifier | None = None,
        indexing_delay_seconds: float | None = None,
        lookup_timeout_seconds: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.attribution = attribution
        self.channels = channels
        self.fallback = fallback
        self.dedup = dedup
        self.dispatcher = dispatcher
        self.notifier = notifier
        self.indexing_delay_seconds = float(
            ATTRIBUTION_SETTINGS["indexing_delay_seconds"] if indexing_delay_seconds is None else indexing_delay_seconds
        )
        self.lookup_timeout_seconds = float(
            ATTRIBUTION_SETTINGS["lookup_timeout_seconds"] if lookup_timeout_seconds is None else lookup_timeout_seconds
        )
        self.prefix_length = int(AUDIT_SETTINGS["prefix_length"])
        self._sleep = sleep

    # ------------------------------------------------------------------ #
    async def process(self, raw: Mapping[str, Any], *, request_id: str | None = None) -> PipelineResult:
        """Run one postback through the pipeline. Never raises."""
        started = time.perf_counter()
        ctx = _RunContext(raw=raw, request_id=request_id)
        try:
            result = await self._run(ctx)
        except Exception as e:
            logger.error(
                "Postback pipeline internal error",
                identifier=ctx.identifier,
                request_id=request_id,
                stage=ctx.stage.value,
                error=str(e),
                exc_info=True,
            )
            await self._alert(format_internal_error(identifier=ctx.identifier, request_id=request_id, error=e))
            result = PipelineResult(
                outcome=PipelineOutcome.FAILED,
                stage=ctx.stage,
                message="Internal error while processing postback",
                identifier=ctx.identifier,
                reason=FailureReason.INTERNAL.value,
                error=e,
            )

        duration_ms = (time.perf_counter() - started) * 1000
        logger.info(
            "Postback processed",
            identifier=result.identifier,
            request_id=request_id,
            outcome=result.outcome.value,
            reason=result.reason,
            stage=result.stage.value,
        )
        log_performance("postback_pipeline", duration_ms, {"outcome": result.outcome.value, "lookups": ctx.lookups})
        return result

    async def _run(self, ctx: _RunContext) -> PipelineResult:
        steps = (self._validate, self._classify, self._check_dedup, self._look_up, self._deliver)
        try:
            for step in steps:
                terminal = await step(ctx)
                if terminal is not None:
                    return terminal
            raise RuntimeError("pipeline finished without a terminal result")
        finally:
            if ctx.reserved and not ctx.delivered and ctx.event is not None:
                self.dedup.release(ctx.event.identifier)

    def _ignored(self, ctx: _RunContext, reason: IgnoreReason, message: str, **details: Any) -> PipelineResult:
        logger.info("Postback ignored", identifier=ctx.identifier, request_id=ctx.request_id, reason=reason.value, **details)
        return PipelineResult(
            outcome=PipelineOutcome.IGNORED,
            stage=ctx.stage,
            message=message,
            identifier=ctx.identifier,
            reason=reason.value,
            details=details,
        )

    # ----------------------------- stages ----------------------------- #
    async def _validate(self, ctx: _RunContext) -> PipelineResult | None:
        try:
            ctx.event = PostbackEvent.model_validate(dict(ctx.raw))
        except PydanticValidationError as e:
            details = _validation_details(e)
            error = ValidationError("Invalid postback parameters", details)
            logger.warning("Postback validation failed", identifier=ctx.identifier, request_id=ctx.request_id, errors=details)
            return PipelineResult(
                outcome=PipelineOutcome.FAILED,
                stage=ctx.stage,
                message="Invalid postback parameters",
                identifier=ctx.identifier,
                reason=FailureReason.VALIDATION.value,
                error=error,
                details={"errors": details},
            )
        ctx.stage = PipelineStage.VALIDATED
        logger.debug(
            "Postback validated",
            identifier=ctx.event.identifier,
            status=ctx.event.status,
            source_token=ctx.event.source_token,
            extra_fields=sorted(ctx.event.extra_fields) or None,
        )
        return None

    async def _classify(self, ctx: _RunContext) -> PipelineResult | None:
        assert ctx.event is not None
        classification = classify_status(ctx.event.status)
        ctx.stage = PipelineStage.CLASSIFIED
        if classification.accepted:
            return None
        reason = IgnoreReason.STATUS_REJECTED if classification.decision == StatusDecision.REJECT else IgnoreReason.STATUS_IGNORED
        return self._ignored(
            ctx,
            reason,
            f"Status '{ctx.event.status}' is not a deposit",
            status=ctx.event.status,
            classification=classification.reason,
            keyword=classification.keyword,
        )

    async def _check_dedup(self, ctx: _RunContext) -> PipelineResult | None:
        assert ctx.event is not None
        reservation = self.dedup.try_reserve(ctx.event.identifier)
        ctx.stage = PipelineStage.DEDUP_CHECKED
        if reservation.acquired:
            ctx.reserved = True
            return None
        if reservation.result == ReserveResult.DUPLICATE:
            return self._ignored(
                ctx,
                IgnoreReason.DUPLICATE,
                "Duplicate postback, already delivered",
                cache_age_seconds=round(reservation.age_seconds or 0.0, 3),
            )
        return self._ignored(
            ctx,
            IgnoreReason.IN_FLIGHT,
            "Postback for this identifier is already being processed",
            cache_age_seconds=round(reservation.age_seconds or 0.0, 3),
        )

    async def _lookup_once(self, identifier: str) -> Optional[ConversionRecord]:
        try:
            return await asyncio.wait_for(self.attribution.lookup(identifier), timeout=self.lookup_timeout_seconds)
        except asyncio.TimeoutError as e:
            raise AttributionLookupError("Attribution lookup timed out", reason="timeout") from e

    async def _look_up(self, ctx: _RunContext) -> PipelineResult | None:
        assert ctx.event is not None
        identifier = ctx.event.identifier
        try:
            ctx.lookups += 1
            record = await self._lookup_once(identifier)
            if record is None:
                logger.info(
                    "Conversion not indexed yet, retrying after delay",
                    identifier=identifier,
                    request_id=ctx.request_id,
                    delay_seconds=self.indexing_delay_seconds,
                )
                await self._sleep(self.indexing_delay_seconds)
                ctx.lookups += 1
                record = await self._lookup_once(identifier)
        except AttributionLookupError as e:
            ctx.stage = PipelineStage.LOOKED_UP
            return self._ignored(
                ctx,
                IgnoreReason.ATTRIBUTION_UNAVAILABLE,
                "Attribution lookup failed, postback ignored",
                error=str(e),
                lookup_reason=e.reason,
                attempts=e.attempts,
            )
        ctx.stage = PipelineStage.LOOKED_UP

        if record is not None:
            if not self.channels.is_target_channel(record.channel_id):
                return self._ignored(
                    ctx,
                    IgnoreReason.NON_TARGET_CHANNEL,
                    f"Channel {self.channels.name(record.channel_id)} is not a target channel",
                    channel_id=record.channel_id,
                )
            ctx.record = record
            return None

        binding = self.fallback.resolve(ctx.event.source_token)
        if binding is None:
            known = self.fallback.known_tokens
            return self._ignored(
                ctx,
                IgnoreReason.NO_ATTRIBUTION,
                f"No attribution available; source token {ctx.event.source_token!r} not in known fallback sources {known}",
                source_token=ctx.event.source_token,
                known_sources=known,
            )
        logger.info(
            "Using fallback attribution",
            identifier=identifier,
            request_id=ctx.request_id,
            source_token=binding.token,
            channel_id=binding.channel_id,
        )
        ctx.binding = binding
        return None

    def _payload(self, ctx: _RunContext) -> DeliveryPayload:
        event = ctx.event
        assert event is not None
        if ctx.record is not None:
            record = ctx.record
            return DeliveryPayload(
                identifier=event.identifier,
                channel_id=record.channel_id,
                source_name=record.channel_name or self.channels.name(record.channel_id),
                buyer_id=record.buyer_id,
                geo=record.country_code or event.geo_code,
                offer_name=record.offer_name,
                campaign_name=record.campaign_name,
                sub_id_2=record.sub_id_2,
                creative=record.sub_id_4,
                payout=event.payout_amount if event.payout_amount is not None else record.revenue,
                fallback=False,
            )
        assert ctx.binding is not None
        return DeliveryPayload(
            identifier=event.identifier,
            channel_id=ctx.binding.channel_id,
            source_name=ctx.binding.channel_name,
            buyer_id=event.identifier[: self.prefix_length],
            geo=event.geo_code,
            payout=event.payout_amount,
            fallback=True,
        )

    async def _deliver(self, ctx: _RunContext) -> PipelineResult | None:
        payload = self._payload(ctx)
        try:
            report = await self.dispatcher.dispatch(payload)
        except DeliveryError as e:
            logger.error(
                "Deposit notification delivery failed",
                identifier=payload.identifier,
                request_id=ctx.request_id,
                error=str(e),
                success_count=e.success_count,
                failed_count=e.failed_count,
            )
            await self._alert(format_delivery_failure(identifier=payload.identifier, error=e))
            return PipelineResult(
                outcome=PipelineOutcome.FAILED,
                stage=ctx.stage,
                message="Deposit notification could not be delivered",
                identifier=payload.identifier,
                reason=FailureReason.DELIVERY.value,
                error=e,
                details={
                    "recipients": e.recipient_count,
                    "success": e.success_count,
                    "failed": e.failed_count,
                },
            )

        self.dedup.mark_processed(payload.identifier)
        ctx.delivered = True
        outcome = PipelineOutcome.FALLBACK_DELIVERED if payload.fallback else PipelineOutcome.DELIVERED
        log_business_event(
            "deposit_delivered",
            {
                "identifier": payload.identifier,
                "fallback": payload.fallback,
                "channel_id": payload.channel_id,
                "recipients": report.recipient_count,
                "success": report.success_count,
                "failed": report.failed_count,
            },
            request_id=ctx.request_id,
        )
        return PipelineResult(
            outcome=outcome,
            stage=ctx.stage,
            message="Deposit notification sent (fallback attribution)" if payload.fallback else "Deposit notification sent",
            identifier=payload.identifier,
            delivery=report,
            details={"channel_id": payload.channel_id, "channel_name": payload.source_name},
        )

    async def _alert(self, message: str) -> None:
        if self.notifier is None:
            return
        try:
            await self.notifier.notify_operators(message)
        except Exception as e:
            logger.error("Operator alert failed", error=str(e), exc_info=True)


__all__ = ["PostbackPipeline", "PipelineResult", "AttributionSource"]
