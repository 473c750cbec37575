"""Process wiring — every long-lived client is built here once and passed down."""

import random
from dataclasses import dataclass
from datetime import datetime
from functools import partial
from typing import Callable, Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from eventrelay.config import Settings, get_settings
from eventrelay.database import create_engine, create_session_factory, create_tables
from eventrelay.models import utcnow
from eventrelay.services.alerts import AlertNotifier
from eventrelay.services.bus import MessageBus, create_bus
from eventrelay.services.delivery import DeliveryEngine
from eventrelay.services.delivery_log import DeliveryLog
from eventrelay.services.dispatcher import Dispatcher
from eventrelay.services.email import send_email_smtp
from eventrelay.services.health import HealthMonitor
from eventrelay.services.mailer import EmailWorker
from eventrelay.services.producer import EventProducer
from eventrelay.services.retry import RetryPolicy, RetryQueue, RetrySweeper
from eventrelay.services.secretbox import SecretBox
from eventrelay.services.subscriptions import SubscriptionRegistry


@dataclass
class Components:
    settings: Settings
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    bus: MessageBus
    http: httpx.AsyncClient
    registry: SubscriptionRegistry
    delivery_log: DeliveryLog
    retry_queue: RetryQueue
    policy: RetryPolicy
    health: HealthMonitor
    delivery: DeliveryEngine
    producer: EventProducer
    dispatcher: Dispatcher
    sweeper: RetrySweeper
    alerts: AlertNotifier
    mailer: EmailWorker
    owns_http: bool = True

    async def aclose(self) -> None:
        if self.owns_http:
            await self.http.aclose()
        await self.bus.close()
        await self.engine.dispose()


async def build_components(
    settings: Optional[Settings] = None,
    bus: Optional[MessageBus] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    clock: Callable[[], datetime] = utcnow,
    rng: Optional[random.Random] = None,
) -> Components:
    settings = settings or get_settings()
    engine = create_engine(settings)
    await create_tables(engine)
    session_factory = create_session_factory(engine)

    bus = bus or create_bus(settings)
    owns_http = http_client is None
    http = http_client or httpx.AsyncClient(
        timeout=settings.delivery_timeout, follow_redirects=False
    )

    registry = SubscriptionRegistry(
        session_factory,
        SecretBox.from_settings(settings),
        allow_http=settings.allow_http,
        cache_ttl=settings.registry_cache_ttl,
        db_timeout=settings.db_timeout,
        clock=clock,
    )
    delivery_log = DeliveryLog(session_factory, db_timeout=settings.db_timeout)
    retry_queue = RetryQueue(session_factory, db_timeout=settings.db_timeout)
    policy = RetryPolicy.from_settings(settings, rng=rng)
    health = HealthMonitor(
        registry,
        bus,
        settings.topic_alerts,
        consecutive_threshold=settings.auto_disable_consecutive_failures,
        give_up_threshold=settings.auto_disable_give_up_threshold,
        window=settings.auto_disable_window,
        clock=clock,
    )
    delivery = DeliveryEngine(
        http,
        session_factory,
        registry,
        delivery_log,
        retry_queue,
        health,
        policy,
        timeout=settings.delivery_timeout,
        excerpt_bytes=settings.response_excerpt_bytes,
        user_agent=settings.user_agent,
        db_timeout=settings.db_timeout,
        clock=clock,
    )
    producer = EventProducer(
        bus, settings.topic_primary, publish_timeout=settings.publish_timeout, clock=clock
    )
    dispatcher = Dispatcher(
        bus,
        registry,
        delivery,
        topics=(settings.topic_primary, settings.topic_retry),
        concurrency=settings.worker_concurrency,
        fanout=settings.per_message_fanout,
        lease_duration=settings.lease_duration,
        lease_extend_interval=settings.lease_extend_interval,
        max_redeliveries=settings.max_redeliveries,
    )
    sweeper = RetrySweeper(
        retry_queue,
        bus,
        settings.topic_retry,
        delivery_log,
        interval=settings.retry_sweep_interval,
        batch_size=settings.retry_sweep_batch,
        retention=settings.delivery_log_retention,
        purge_interval=settings.purge_interval,
        clock=clock,
    )
    alerts = AlertNotifier(
        bus,
        settings.topic_alerts,
        email_to=settings.alert_email_to,
        send_email=partial(send_email_smtp, settings=settings),
    )
    mailer = EmailWorker(
        bus,
        settings.topic_email,
        partial(send_email_smtp, settings=settings),
        max_redeliveries=settings.max_redeliveries,
        retry_pause=settings.email_retry_pause,
    )
    return Components(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        bus=bus,
        http=http,
        registry=registry,
        delivery_log=delivery_log,
        retry_queue=retry_queue,
        policy=policy,
        health=health,
        delivery=delivery,
        producer=producer,
        dispatcher=dispatcher,
        sweeper=sweeper,
        alerts=alerts,
        mailer=mailer,
        owns_http=owns_http,
    )
