"""
Tests for the ledger: compare-and-set transitions, grant state machine,
atomic balance changes, stock and the audit trail.
"""
import asyncio
import pytest
from datetime import timedelta

from pydantic import ValidationError
from sqlalchemy import update

from storefront.db.init_db import create_session_factory
from storefront.db.models import ProductModel, utcnow
from storefront.exceptions import UnknownGrant, UnknownTransaction, UnknownUser
from storefront.models.catalog import CoinsPayload, GrantData, LineItem, VipPayload
from tests.conftest import line_item, make_product, make_user


async def _pending_transaction(container, ledger, user_id=None):
    user_id = user_id or await make_user(container)
    product_id = await make_product(container, "COINS_100", "coins", 500, {"amount": 100})
    return await ledger.create_transaction(user_id, [line_item(product_id, "coins", 500, data={"amount": 100})])


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------
class TestTransactions:
    async def test_amount_equals_sum_of_subtotals(self, container, ledger):
        user_id = await make_user(container)
        coins_id = await make_product(container, "COINS_100", "coins", 500, {"amount": 100})
        vip_id = await make_product(container, "VIP_30", "vip", 1500, {"level": "gold", "duration": 30})

        transaction = await ledger.create_transaction(user_id, [
            line_item(coins_id, "coins", 500, quantity=2, data={"amount": 100}),
            line_item(vip_id, "vip", 1500, data={"level": "gold", "duration": 30}),
        ])

        assert transaction.amount_cents == 2500
        assert transaction.status == "pending"
        stored = await ledger.get_transaction(transaction.id)
        assert stored.amount_cents == sum(item.subtotal_cents for item in stored.line_items)
        assert [item.product_type for item in stored.line_items] == ["coins", "vip"]

    async def test_snapshot_survives_price_change(self, container, ledger):
        transaction = await _pending_transaction(container, ledger)

        async with create_session_factory(container.engine)() as db, db.begin():
            await db.execute(update(ProductModel).values(price_cents=9999))

        stored = await ledger.get_transaction(transaction.id)
        assert stored.amount_cents == 500
        assert stored.line_items[0].unit_price_cents == 500

    def test_mismatched_subtotal_rejected(self):
        line = line_item(1, "coins", 500, data={"amount": 100})
        with pytest.raises(ValidationError):
            LineItem.model_validate({**line.model_dump(), "subtotal_cents": 400})

    async def test_first_transition_wins(self, container, ledger):
        transaction = await _pending_transaction(container, ledger)

        assert await ledger.update_transaction_status(transaction.id, "approved") == "pending"
        assert await ledger.update_transaction_status(transaction.id, "approved") == "approved"
        assert await ledger.update_transaction_status(transaction.id, "cancelled") == "approved"

        stored = await ledger.get_transaction(transaction.id)
        assert stored.status == "approved"

    @pytest.mark.parametrize("terminal", ["approved", "cancelled", "failed"])
    async def test_terminal_states_are_final(self, container, ledger, terminal):
        transaction = await _pending_transaction(container, ledger)
        await ledger.update_transaction_status(transaction.id, terminal)

        for other in ("approved", "cancelled", "failed"):
            previous = await ledger.update_transaction_status(transaction.id, other)
            assert previous == terminal

        assert (await ledger.get_transaction(transaction.id)).status == terminal

    async def test_concurrent_transitions_single_winner(self, container, ledger):
        transaction = await _pending_transaction(container, ledger)

        results = await asyncio.gather(*[
            ledger.update_transaction_status(transaction.id, "approved") for _ in range(5)
        ])

        assert results.count("pending") == 1
        assert results.count("approved") == 4

    async def test_unknown_transaction(self, ledger):
        with pytest.raises(UnknownTransaction):
            await ledger.update_transaction_status("missing", "approved")

    async def test_lookup_by_payment_reference(self, container, ledger):
        transaction = await _pending_transaction(container, ledger)
        await ledger.attach_payment(transaction.id, "txid-abc", qr_code="qr")

        found = await ledger.find_transaction_by_payment_ref("txid-abc")
        assert found.id == transaction.id
        assert found.qr_code == "qr"
        assert await ledger.find_transaction_by_payment_ref("txid-other") is None

    async def test_list_expired_pending(self, container, ledger):
        user_id = await make_user(container)
        product_id = await make_product(container, "COINS_100", "coins", 500)
        items = [line_item(product_id, "coins", 500)]
        stale = await ledger.create_transaction(user_id, items, expires_at=utcnow() - timedelta(minutes=1))
        await ledger.create_transaction(user_id, items, expires_at=utcnow() + timedelta(minutes=15))

        expired = await ledger.list_expired_pending()
        assert [t.id for t in expired] == [stale.id]

    async def test_transition_writes_audit_entry(self, container, ledger):
        transaction = await _pending_transaction(container, ledger)
        await ledger.update_transaction_status(transaction.id, "approved", actor="webhook:pix")
        await ledger.update_transaction_status(transaction.id, "cancelled", actor="webhook:pix")

        entries = await ledger.list_audit_entries(entity_id=transaction.id, action="transaction_status_changed")
        assert len(entries) == 1
        assert entries[0].actor == "webhook:pix"
        assert entries[0].details["before"] == {"status": "pending"}
        assert entries[0].details["after"] == {"status": "approved"}


# ---------------------------------------------------------------------------
# Grants
# ---------------------------------------------------------------------------
class TestGrants:
    async def _grant(self, container, ledger):
        user_id = await make_user(container)
        return await ledger.create_grant(user_id, "coins", GrantData(payload=CoinsPayload(amount=50)))

    async def test_create_grant_pending(self, container, ledger):
        grant = await self._grant(container, ledger)
        stored = await ledger.get_grant(grant.id)
        assert stored.status == "pending"
        assert stored.grant_data.payload == CoinsPayload(amount=50)
        assert stored.kind == "currency"

    async def test_payload_type_must_match(self, container, ledger):
        user_id = await make_user(container)
        with pytest.raises(ValueError):
            await ledger.create_grant(user_id, "vip", GrantData(payload=CoinsPayload()))

    async def test_delivered_is_terminal(self, container, ledger):
        grant = await self._grant(container, ledger)
        assert await ledger.update_grant_status(grant.id, "delivered") == "pending"
        assert await ledger.update_grant_status(grant.id, "failed") == "delivered"
        assert await ledger.update_grant_status(
            grant.id, "failed", allowed_from=("pending", "failed")
        ) == "delivered"
        assert (await ledger.get_grant(grant.id)).status == "delivered"

    async def test_failed_to_delivered_needs_explicit_source(self, container, ledger):
        grant = await self._grant(container, ledger)
        await ledger.update_grant_status(grant.id, "failed")

        assert await ledger.update_grant_status(grant.id, "delivered") == "failed"
        assert (await ledger.get_grant(grant.id)).status == "failed"

        assert await ledger.update_grant_status(
            grant.id, "delivered", allowed_from=("pending", "failed")
        ) == "failed"
        assert (await ledger.get_grant(grant.id)).status == "delivered"

    async def test_never_back_to_pending(self, container, ledger):
        grant = await self._grant(container, ledger)
        with pytest.raises(ValueError):
            await ledger.update_grant_status(grant.id, "pending")

    async def test_unknown_grant(self, ledger):
        with pytest.raises(UnknownGrant):
            await ledger.update_grant_status("missing", "delivered")

    async def test_pending_listing_and_count(self, container, ledger):
        first = await self._grant(container, ledger)
        user_id = (await ledger.get_grant(first.id)).user_id
        second = await ledger.create_grant(user_id, "vip", GrantData(payload=VipPayload()))
        await ledger.update_grant_status(first.id, "delivered")

        pending = await ledger.list_pending_grants()
        assert [g.id for g in pending] == [second.id]
        assert await ledger.count_pending_grants() == 1
        assert len(await ledger.list_grants(user_id=user_id)) == 2
        assert [g.id for g in await ledger.list_grants(status="delivered")] == [first.id]

    async def test_delivery_lease_is_exclusive(self, container, ledger):
        grant = await self._grant(container, ledger)

        assert await ledger.claim_grant(grant.id, lease_seconds=120) is True
        assert await ledger.claim_grant(grant.id, lease_seconds=120) is False

        await ledger.release_grant(grant.id)
        assert await ledger.claim_grant(grant.id, lease_seconds=120) is True

    async def test_concurrent_claims_single_winner(self, container, ledger):
        grant = await self._grant(container, ledger)

        results = await asyncio.gather(*[ledger.claim_grant(grant.id, lease_seconds=120) for _ in range(5)])

        assert results.count(True) == 1

    async def test_stale_lease_can_be_claimed(self, container, ledger):
        grant = await self._grant(container, ledger)
        await ledger.claim_grant(grant.id, lease_seconds=120)

        later = utcnow() + timedelta(seconds=121)
        assert await ledger.claim_grant(grant.id, lease_seconds=120, now=later) is True

    async def test_leased_creation_blocks_claims(self, container, ledger):
        user_id = await make_user(container)
        grant = await ledger.create_grant(user_id, "coins", GrantData(payload=CoinsPayload(amount=50)), leased=True)

        assert await ledger.claim_grant(grant.id, lease_seconds=120) is False

    async def test_claim_respects_grant_status(self, container, ledger):
        grant = await self._grant(container, ledger)
        await ledger.update_grant_status(grant.id, "failed")

        assert await ledger.claim_grant(grant.id, lease_seconds=120) is False
        assert await ledger.claim_grant(grant.id, lease_seconds=120, allowed_from=("pending", "failed")) is True


# ---------------------------------------------------------------------------
# Accounts and stock
# ---------------------------------------------------------------------------
class TestAccounts:
    async def test_credit_coins_is_additive(self, container, ledger):
        user_id = await make_user(container, coins=10)
        await asyncio.gather(*[ledger.credit_coins(user_id, 5) for _ in range(10)])
        assert (await ledger.get_user(user_id)).coins == 60

    async def test_credit_unknown_user(self, ledger):
        with pytest.raises(UnknownUser):
            await ledger.credit_coins(999, 5)

    async def test_vip_from_now_when_expired(self, container, ledger):
        now = utcnow()
        user_id = await make_user(container, vip_level="bronze", vip_expires_at=now - timedelta(days=3))

        expiry = await ledger.extend_vip(user_id, "gold", timedelta(days=30), now=now)

        assert expiry == now + timedelta(days=30)
        user = await ledger.get_user(user_id)
        assert user.vip_level == "gold"

    async def test_vip_extends_active_entitlement(self, container, ledger):
        now = utcnow()
        current = now + timedelta(days=10)
        user_id = await make_user(container, vip_level="gold", vip_expires_at=current)

        expiry = await ledger.extend_vip(user_id, "gold", timedelta(days=30), now=now)
        assert expiry == current + timedelta(days=30)

    async def test_vip_reset_policy(self, container, ledger):
        now = utcnow()
        user_id = await make_user(container, vip_level="gold", vip_expires_at=now + timedelta(days=10))

        expiry = await ledger.extend_vip(user_id, "silver", timedelta(days=30), now=now, stacking="reset")
        assert expiry == now + timedelta(days=30)

    async def test_concurrent_vip_extensions_do_not_lose_updates(self, container, ledger):
        now = utcnow()
        user_id = await make_user(container)

        await asyncio.gather(*[
            ledger.extend_vip(user_id, "gold", timedelta(days=1), now=now) for _ in range(3)
        ])

        user = await ledger.get_user(user_id)
        assert user.vip_expires_at == now + timedelta(days=3)

    async def test_stock_floored_at_zero(self, container, ledger):
        product_id = await make_product(container, "CAR", "vehicle", 10000, {"model": "adder"}, stock=2)
        assert await ledger.decrement_stock(product_id, 1) == 1
        assert await ledger.decrement_stock(product_id, 5) == 0

    async def test_unlimited_stock_untouched(self, container, ledger):
        product_id = await make_product(container, "COINS", "coins", 500)
        assert await ledger.decrement_stock(product_id, 3) is None
        assert (await ledger.get_product(product_id)).stock == -1
