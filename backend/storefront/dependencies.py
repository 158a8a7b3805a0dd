"""
Service Container

Builds the pipeline once per application (or per test) and hands it to the
routers through FastAPI dependencies. Nothing is a module-level singleton:
the lifespan stores the container on app.state.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncEngine

from .clients.game_server import GameServerBoundary, GameServerClient
from .clients.payment_provider import PaymentProvider, PixClient
from .config import Settings
from .db.init_db import create_engine, create_session_factory
from .mocks.game_server import MockGameServer
from .mocks.payment_provider import MockPixProvider
from .services.checkout import CheckoutService
from .services.delivery import DeliveryCoordinator
from .services.fulfillment import FulfillmentEngine
from .services.ledger import Ledger
from .services.scheduler import BackgroundJobs
from .services.webhooks import WebhookReconciler

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    settings: Settings
    engine: AsyncEngine
    ledger: Ledger
    provider: PaymentProvider
    game_server: GameServerBoundary
    delivery: DeliveryCoordinator
    fulfillment: FulfillmentEngine
    reconciler: WebhookReconciler
    checkout: CheckoutService
    jobs: BackgroundJobs

    def schedule_jobs(self) -> None:
        """Register the delivery queue and expiry sweep jobs."""
        self.jobs.add_interval_job(
            "pending_delivery_queue",
            self._run_pending_queue,
            self.settings.pending_queue_interval_seconds
        )
        self.jobs.add_interval_job(
            "expire_pending_transactions",
            self._run_expiry_sweep,
            self.settings.expiry_sweep_interval_seconds
        )

    async def _run_pending_queue(self) -> None:
        try:
            await self.delivery.process_pending_queue(actor="scheduler")
        except Exception as e:
            logger.error(f"Pending delivery queue job failed: {e}", exc_info=True)

    async def _run_expiry_sweep(self) -> None:
        try:
            await self.checkout.expire_stale_transactions()
        except Exception as e:
            logger.error(f"Expiry sweep job failed: {e}", exc_info=True)

    async def close(self) -> None:
        self.jobs.shutdown(wait=False)
        await self.provider.close()
        await self.game_server.close()
        await self.engine.dispose()


def build_container(
    settings: Settings,
    game_server: Optional[GameServerBoundary] = None,
    provider: Optional[PaymentProvider] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
) -> ServiceContainer:
    """
    Wire the pipeline from settings.

    Missing provider or game server credentials select the in-process mocks;
    explicit game_server/provider arguments override both.
    """
    engine = create_engine(settings.database_url)
    ledger = Ledger(create_session_factory(engine))

    if provider is None:
        if settings.pix_configured:
            provider = PixClient(
                settings.pix_base_url,
                settings.pix_client_id,
                settings.pix_client_secret,
                settings.pix_key,
                timeout_seconds=settings.pix_timeout_seconds,
                charge_ttl_seconds=settings.pix_charge_ttl_seconds,
            )
        else:
            logger.warning("PIX credentials not configured, using mock payment provider")
            provider = MockPixProvider(charge_ttl_seconds=settings.pix_charge_ttl_seconds)

    if game_server is None:
        if settings.game_server_configured:
            game_server = GameServerClient(
                settings.game_server_url,
                settings.game_server_token,
                timeout_seconds=settings.game_server_timeout_seconds,
            )
        else:
            logger.warning("Game server token not configured, using mock game server")
            game_server = MockGameServer()

    delivery = DeliveryCoordinator(
        ledger,
        game_server,
        attempts=settings.delivery_attempts,
        retry_delay_seconds=settings.delivery_retry_delay_seconds,
        retry_after_offline_seconds=settings.retry_after_offline_seconds,
        retry_after_transient_seconds=settings.retry_after_transient_seconds,
        lease_seconds=settings.delivery_lease_seconds,
        sleep=sleep,
    )
    fulfillment = FulfillmentEngine(ledger, delivery, vip_stacking=settings.vip_stacking)
    reconciler = WebhookReconciler(
        ledger,
        fulfillment,
        delivery,
        secrets={
            "pix": settings.pix_webhook_secret,
            "generic": settings.payment_webhook_secret,
            "game_server": settings.game_server_webhook_secret,
        },
        signature_required=settings.webhook_signature_required,
    )
    checkout = CheckoutService(
        ledger,
        provider,
        reconciler,
        currency=settings.currency,
        transaction_ttl_seconds=settings.pix_charge_ttl_seconds,
    )

    return ServiceContainer(
        settings=settings,
        engine=engine,
        ledger=ledger,
        provider=provider,
        game_server=game_server,
        delivery=delivery,
        fulfillment=fulfillment,
        reconciler=reconciler,
        checkout=checkout,
        jobs=BackgroundJobs(),
    )


# ============================================================================
# FastAPI Dependencies
# ============================================================================

def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def get_ledger(request: Request) -> Ledger:
    return get_container(request).ledger


def get_checkout(request: Request) -> CheckoutService:
    return get_container(request).checkout


def get_reconciler(request: Request) -> WebhookReconciler:
    return get_container(request).reconciler


def get_delivery(request: Request) -> DeliveryCoordinator:
    return get_container(request).delivery


def get_fulfillment(request: Request) -> FulfillmentEngine:
    return get_container(request).fulfillment


def get_game_server(request: Request) -> GameServerBoundary:
    return get_container(request).game_server
