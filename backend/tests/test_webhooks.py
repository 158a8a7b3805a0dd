"""
Tests for webhook reconciliation: signatures, envelope parsing, idempotent
transitions and concurrent duplicate deliveries.
"""
import asyncio
import json
import pytest

from storefront.exceptions import AuthenticationError, MalformedPayload, UnknownTransaction
from storefront.models.catalog import GrantData, InventoryPayload
from storefront.services.webhooks import WebhookReconciler, parse_pix_events
from tests.conftest import (
    GAME_SECRET,
    PAYMENT_SECRET,
    PIX_SECRET,
    STEAM_ID,
    line_item,
    make_coins_and_vip_cart,
    make_user,
    sign,
)


async def _pending_with_payment(container, payment_id="txid-0001"):
    user_id = await make_user(container)
    coins_id, vip_id = await make_coins_and_vip_cart(container)
    transaction = await container.ledger.create_transaction(user_id, [
        line_item(coins_id, "coins", 500, data={"amount": 100}),
        line_item(vip_id, "vip", 1500, data={"level": "gold", "duration": 30}),
    ])
    await container.ledger.attach_payment(transaction.id, payment_id)
    return transaction, user_id


def pix_body(txid="txid-0001", status="CONCLUIDA") -> bytes:
    return json.dumps({"pix": [{"txid": txid, "status": status, "valor": "20.00"}]}).encode()


class TestSignatures:
    async def test_invalid_signature_changes_nothing(self, container, ledger):
        transaction, user_id = await _pending_with_payment(container)
        body = pix_body()

        with pytest.raises(AuthenticationError):
            await container.reconciler.handle(body, "0" * 64, "pix")

        assert (await ledger.get_transaction(transaction.id)).status == "pending"
        assert await ledger.list_grants(transaction_id=transaction.id) == []
        assert (await ledger.get_user(user_id)).coins == 0

    async def test_missing_signature_rejected(self, container):
        await _pending_with_payment(container)
        with pytest.raises(AuthenticationError):
            await container.reconciler.handle(pix_body(), None, "pix")

    async def test_signature_over_raw_bytes(self, container, ledger):
        transaction, _ = await _pending_with_payment(container)
        body = b'{"pix": [ {"txid": "txid-0001",  "status": "CONCLUIDA"} ]}'

        outcomes = await container.reconciler.handle(body, sign(body, PIX_SECRET), "pix")

        assert outcomes[0].action == "fulfilled"

    async def test_prefixed_signature_accepted(self, container):
        await _pending_with_payment(container)
        body = pix_body()

        outcomes = await container.reconciler.handle(body, "sha256=" + sign(body, PIX_SECRET), "pix")

        assert outcomes[0].status == "approved"

    async def test_unsigned_allowed_only_when_not_required(self, container):
        await _pending_with_payment(container)
        reconciler = WebhookReconciler(
            container.ledger, container.fulfillment, container.delivery,
            secrets={"pix": ""}, signature_required=False
        )

        outcomes = await reconciler.handle(pix_body(), None, "pix")
        assert outcomes[0].action == "fulfilled"

    async def test_empty_secret_rejects_when_required(self, container):
        await _pending_with_payment(container)
        reconciler = WebhookReconciler(
            container.ledger, container.fulfillment, container.delivery,
            secrets={"pix": ""}, signature_required=True
        )

        with pytest.raises(AuthenticationError):
            await reconciler.handle(pix_body(), sign(pix_body(), ""), "pix")


class TestReconciliation:
    async def test_approved_runs_fulfillment(self, container, ledger):
        transaction, user_id = await _pending_with_payment(container)
        body = pix_body()

        outcomes = await container.reconciler.handle(body, sign(body, PIX_SECRET), "pix")

        assert outcomes[0].action == "fulfilled"
        assert outcomes[0].grants_created == 2
        assert (await ledger.get_transaction(transaction.id)).status == "approved"
        assert (await ledger.get_user(user_id)).coins == 100

    async def test_duplicate_approved_is_noop(self, container, ledger):
        transaction, user_id = await _pending_with_payment(container)
        body = pix_body()

        first = await container.reconciler.handle(body, sign(body, PIX_SECRET), "pix")
        second = await container.reconciler.handle(body, sign(body, PIX_SECRET), "pix")

        assert first[0].action == "fulfilled"
        assert second[0].action == "duplicate"
        assert len(await ledger.list_grants(transaction_id=transaction.id)) == 2
        assert (await ledger.get_user(user_id)).coins == 100

    async def test_concurrent_duplicates_fulfill_once(self, container, ledger):
        transaction, user_id = await _pending_with_payment(container)
        body = pix_body()
        signature = sign(body, PIX_SECRET)

        results = await asyncio.gather(*[
            container.reconciler.handle(body, signature, "pix") for _ in range(4)
        ])

        actions = [outcomes[0].action for outcomes in results]
        assert actions.count("fulfilled") == 1
        assert actions.count("duplicate") == 3
        assert len(await ledger.list_grants(transaction_id=transaction.id)) == 2
        assert (await ledger.get_user(user_id)).coins == 100

    async def test_cancel_after_approve_ignored(self, container, ledger):
        transaction, _ = await _pending_with_payment(container)
        approved = pix_body()
        cancelled = pix_body(status="REMOVIDA_PELO_USUARIO_RECEBEDOR")

        await container.reconciler.handle(approved, sign(approved, PIX_SECRET), "pix")
        outcomes = await container.reconciler.handle(cancelled, sign(cancelled, PIX_SECRET), "pix")

        assert outcomes[0].action == "duplicate"
        assert (await ledger.get_transaction(transaction.id)).status == "approved"

    async def test_cancelled_runs_failure_path(self, container, ledger):
        transaction, _ = await _pending_with_payment(container)
        body = pix_body(status="REMOVIDA_PELO_USUARIO_RECEBEDOR")

        outcomes = await container.reconciler.handle(body, sign(body, PIX_SECRET), "pix")

        assert outcomes[0].action == "failed"
        assert (await ledger.get_transaction(transaction.id)).status == "cancelled"
        assert await ledger.list_grants(transaction_id=transaction.id) == []
        assert len(await ledger.list_audit_entries(entity_id=transaction.id, action="payment_failed")) == 1

    async def test_unrecognized_pix_status_leaves_pending(self, container, ledger):
        transaction, _ = await _pending_with_payment(container)
        body = pix_body(status="ATIVA")

        outcomes = await container.reconciler.handle(body, sign(body, PIX_SECRET), "pix")

        assert outcomes[0].action == "ignored"
        assert (await ledger.get_transaction(transaction.id)).status == "pending"

    async def test_unknown_payment_reference(self, container):
        body = pix_body(txid="txid-unknown")
        with pytest.raises(UnknownTransaction):
            await container.reconciler.handle(body, sign(body, PIX_SECRET), "pix")

    async def test_batch_with_foreign_charge_still_applies_ours(self, container, ledger):
        transaction, user_id = await _pending_with_payment(container, payment_id="txid-known")
        body = json.dumps({"pix": [
            {"txid": "txid-not-ours", "status": "CONCLUIDA"},
            {"txid": "txid-known", "status": "CONCLUIDA"},
        ]}).encode()

        outcomes = await container.reconciler.handle(body, sign(body, PIX_SECRET), "pix")

        assert [outcome.action for outcome in outcomes] == ["unknown", "fulfilled"]
        assert outcomes[0].reference == "txid-not-ours"
        assert outcomes[0].transaction_id is None
        assert (await ledger.get_transaction(transaction.id)).status == "approved"
        assert (await ledger.get_user(user_id)).coins == 100

    async def test_batch_of_only_foreign_charges_rejected(self, container):
        body = json.dumps({"pix": [
            {"txid": "txid-a", "status": "CONCLUIDA"},
            {"txid": "txid-b", "status": "CONCLUIDA"},
        ]}).encode()

        with pytest.raises(UnknownTransaction):
            await container.reconciler.handle(body, sign(body, PIX_SECRET), "pix")

    async def test_generic_envelope(self, container, ledger):
        transaction, _ = await _pending_with_payment(container)
        body = json.dumps({"transactionId": transaction.id, "status": "failed"}).encode()

        outcomes = await container.reconciler.handle(body, sign(body, PAYMENT_SECRET), "generic")

        assert outcomes[0].action == "failed"
        assert (await ledger.get_transaction(transaction.id)).status == "failed"

    async def test_generic_envelope_attaches_payment_id(self, container, ledger):
        user_id = await make_user(container)
        coins_id, _ = await make_coins_and_vip_cart(container)
        transaction = await ledger.create_transaction(user_id, [line_item(coins_id, "coins", 500)])
        body = json.dumps({"transactionId": transaction.id, "status": "approved", "paymentId": "gw-1"}).encode()

        await container.reconciler.handle(body, sign(body, PAYMENT_SECRET), "generic")

        assert (await ledger.find_transaction_by_payment_ref("gw-1")).id == transaction.id

    @pytest.mark.parametrize("body", [
        b"not json",
        b"[1, 2]",
        json.dumps({"status": "approved"}).encode(),
        json.dumps({"transactionId": "abc", "status": "refunded"}).encode(),
    ])
    async def test_malformed_generic_payloads(self, container, body):
        with pytest.raises(MalformedPayload):
            await container.reconciler.handle(body, sign(body, PAYMENT_SECRET), "generic")


class TestPixParsing:
    def test_multiple_entries(self):
        events = parse_pix_events({"pix": [
            {"txid": "a", "status": "CONCLUIDA"},
            {"txid": "b", "status": "REMOVIDA_PELO_USUARIO_RECEBEDOR"},
        ]})
        assert [(e.reference, e.status) for e in events] == [("a", "approved"), ("b", "cancelled")]

    def test_top_level_txid(self):
        events = parse_pix_events({"txid": "a", "status": "CONCLUIDA"})
        assert events[0].reference == "a"
        assert events[0].reference_kind == "payment_id"

    def test_entry_without_txid(self):
        with pytest.raises(MalformedPayload):
            parse_pix_events({"pix": [{"status": "CONCLUIDA"}]})


class TestDeliveryConfirmation:
    async def test_signed_confirmation(self, container, ledger):
        user_id = await make_user(container)
        grant = await ledger.create_grant(user_id, "item", GrantData(payload=InventoryPayload(type="item")))
        body = json.dumps({"grantId": grant.id, "status": "delivered", "identifier": STEAM_ID}).encode()

        previous = await container.reconciler.handle_delivery_confirmation(body, sign(body, GAME_SECRET))

        assert previous == "pending"
        assert (await ledger.get_grant(grant.id)).status == "delivered"

    async def test_missing_fields(self, container):
        body = json.dumps({"grantId": "x", "status": "delivered"}).encode()
        with pytest.raises(MalformedPayload):
            await container.reconciler.handle_delivery_confirmation(body, sign(body, GAME_SECRET))
