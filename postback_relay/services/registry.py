"""Service wiring.

Builds the long-lived collaborators once at startup. The lifespan handler keeps
the result on ``app.state.services``; tests build their own with fakes.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from sqlalchemy.orm import Session

from postback_relay.database import SessionLocal
from postback_relay.integrations.keitaro import KeitaroClient
from postback_relay.integrations.telegram import TelegramTransport
from postback_relay.jobs.audit_scheduler import AuditScheduler
from postback_relay.services.alerting import OperatorNotifier
from postback_relay.services.channel_classifier import ChannelClassifier
from postback_relay.services.dedup_cache import DedupCache
from postback_relay.services.delivery_dispatcher import DeliveryDispatcher
from postback_relay.services.delivery_log import DeliveryLogStore
from postback_relay.services.fallback_resolver import FallbackResolver
from postback_relay.services.postback_pipeline import PostbackPipeline
from postback_relay.services.reconciliation_engine import ReconciliationEngine
from postback_relay.services.subscribers import SubscriberRoster
from postback_relay.utils.circuit_breaker import CircuitBreaker


@dataclass
class Services:
    circuit_breaker: CircuitBreaker
    keitaro: KeitaroClient
    transport: TelegramTransport
    channels: ChannelClassifier
    fallback: FallbackResolver
    dedup: DedupCache
    delivery_logs: DeliveryLogStore
    roster: SubscriberRoster
    notifier: OperatorNotifier
    dispatcher: DeliveryDispatcher
    pipeline: PostbackPipeline
    reconciliation: ReconciliationEngine
    scheduler: AuditScheduler


def build_services(session_factory: Callable[[], Session] = SessionLocal) -> Services:
    breaker = CircuitBreaker()
    keitaro = KeitaroClient(circuit_breaker=breaker)
    transport = TelegramTransport()
    channels = ChannelClassifier()
    fallback = FallbackResolver()
    dedup = DedupCache()
    delivery_logs = DeliveryLogStore(session_factory)
    roster = SubscriberRoster(session_factory)
    notifier = OperatorNotifier(transport)
    dispatcher = DeliveryDispatcher(transport, roster, delivery_logs)
    pipeline = PostbackPipeline(
        attribution=keitaro,
        channels=channels,
        fallback=fallback,
        dedup=dedup,
        dispatcher=dispatcher,
        notifier=notifier,
    )
    reconciliation = ReconciliationEngine(
        keitaro, delivery_logs, channels, fallback, report_timezone=keitaro.report_timezone
    )
    scheduler = AuditScheduler(reconciliation, notifier)
    return Services(
        circuit_breaker=breaker,
        keitaro=keitaro,
        transport=transport,
        channels=channels,
        fallback=fallback,
        dedup=dedup,
        delivery_logs=delivery_logs,
        roster=roster,
        notifier=notifier,
        dispatcher=dispatcher,
        pipeline=pipeline,
        reconciliation=reconciliation,
        scheduler=scheduler,
    )


__all__ = ["Services", "build_services"]
