"""
Shared pytest fixtures for all test modules.

Every test gets its own file-backed SQLite database under tmp_path so
concurrent sessions (and concurrent webhooks) behave like production, and its
own service container built with the mock payment provider and mock game
server. Retry sleeps go to an AsyncMock so nothing actually waits.
"""
import json
import pytest
from datetime import datetime
from typing import Any, Dict, Optional
from unittest.mock import AsyncMock

import httpx
from httpx import ASGITransport

from storefront.config import Settings
from storefront.db.init_db import create_session_factory, initialize_database
from storefront.db.models import ProductModel, UserModel
from storefront.dependencies import build_container
from storefront.main import create_app
from storefront.mocks.game_server import MockGameServer
from storefront.mocks.payment_provider import MockPixProvider
from storefront.models.catalog import LineItem, parse_payload
from storefront.services.signature_service import sign_payload


PIX_SECRET = "pix-webhook-secret"
PAYMENT_SECRET = "payment-webhook-secret"
GAME_SECRET = "game-webhook-secret"

STEAM_ID = "steam:110000112345678"


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        database_path=str(tmp_path / "store.db"),
        pix_webhook_secret=PIX_SECRET,
        payment_webhook_secret=PAYMENT_SECRET,
        game_server_webhook_secret=GAME_SECRET,
        pix_client_id="",
        pix_client_secret="",
        game_server_token="",
        scheduler_enabled=False,
        delivery_attempts=3,
        delivery_retry_delay_seconds=5.0,
    )


@pytest.fixture
def game_server():
    """Game server double; every valid identity counts as online."""
    return MockGameServer()


@pytest.fixture
def provider():
    return MockPixProvider()


@pytest.fixture
def sleeper():
    return AsyncMock()


@pytest.fixture
async def container(settings, game_server, provider, sleeper):
    services = build_container(settings, game_server=game_server, provider=provider, sleep=sleeper)
    await initialize_database(services.engine)
    yield services
    await services.close()


@pytest.fixture
def ledger(container):
    return container.ledger


@pytest.fixture
async def client(container, settings):
    """
    httpx client against the app with the test container installed.

    ASGITransport does not run the lifespan, so the container built above is
    the one the routers see.
    """
    app = create_app(settings=settings, container=container)
    async with httpx.AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


# ---------------------------------------------------------------------------
# Helpers, not fixtures, so any test file can import and call them directly.
# ---------------------------------------------------------------------------
async def make_user(
    container,
    username: str = "player1",
    game_identifier: Optional[str] = STEAM_ID,
    coins: int = 0,
    vip_level: str = "none",
    vip_expires_at: Optional[datetime] = None,
) -> int:
    async with create_session_factory(container.engine)() as db, db.begin():
        user = UserModel(
            username=username,
            email=f"{username}@example.com",
            game_identifier=game_identifier,
            coins=coins,
            vip_level=vip_level,
            vip_expires_at=vip_expires_at,
        )
        db.add(user)
        await db.flush()
        return user.id


async def make_product(
    container,
    code: str,
    product_type: str,
    price_cents: int,
    data: Optional[Dict[str, Any]] = None,
    stock: int = -1,
    active: bool = True,
    name: Optional[str] = None,
) -> int:
    async with create_session_factory(container.engine)() as db, db.begin():
        product = ProductModel(
            code=code,
            name=name or code.replace("_", " ").title(),
            price_cents=price_cents,
            type=product_type,
            data=json.dumps(data) if data is not None else None,
            active=active,
            stock=stock,
        )
        db.add(product)
        await db.flush()
        return product.id


def line_item(
    product_id: int,
    product_type: str,
    unit_price_cents: int,
    quantity: int = 1,
    data: Optional[Dict[str, Any]] = None,
    code: str = "ITEM",
) -> LineItem:
    return LineItem(
        product_id=product_id,
        product_code=code,
        name=code.title(),
        product_type=product_type,
        unit_price_cents=unit_price_cents,
        quantity=quantity,
        subtotal_cents=unit_price_cents * quantity,
        payload=parse_payload(product_type, data),
    )


async def make_coins_and_vip_cart(container):
    """The two-item cart: 100 coins for 5.00 plus 30 days of VIP for 15.00."""
    coins_id = await make_product(container, "COINS_100", "coins", 500, {"amount": 100})
    vip_id = await make_product(container, "VIP_30", "vip", 1500, {"level": "gold", "duration": 30})
    return coins_id, vip_id


def sign(body: bytes, secret: str) -> str:
    return sign_payload(body, secret)
