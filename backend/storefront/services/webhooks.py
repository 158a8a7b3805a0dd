"""
Webhook Reconciler

Turns payment status callbacks into transaction transitions. Providers deliver
at least once and in any order, so reconciliation is idempotent:

1. Verify HMAC-SHA256 over the raw body before anything else
2. Parse the envelope into WebhookEvents
3. Resolve each event's transaction
4. Let the ledger's compare-and-set decide; only the caller that moved the
   transaction out of pending runs fulfillment or the failure path

Envelopes:
- pix:     {"pix": [{"txid", "status", ...}]} or {"txid", "status"}
- generic: {"transactionId", "status", "paymentId"?}
"""
import json
import logging
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from ..clients.payment_provider import normalize_pix_status
from ..exceptions import AuthenticationError, MalformedPayload, UnknownTransaction
from ..models.transactions import Transaction
from ..models.webhooks import ReconcileOutcome, WebhookEvent
from .delivery import DeliveryCoordinator
from .fulfillment import FulfillmentEngine
from .ledger import Ledger
from .signature_service import verify_signature

logger = logging.getLogger(__name__)


# ============================================================================
# Envelope Parsing
# ============================================================================

def _load_json(raw_body: bytes) -> Dict[str, Any]:
    try:
        body = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError):
        raise MalformedPayload("Webhook body is not valid JSON")
    if not isinstance(body, dict):
        raise MalformedPayload("Webhook body must be a JSON object")
    return body


def parse_pix_events(body: Dict[str, Any]) -> List[WebhookEvent]:
    """One event per pix[] entry, or a single event from a top-level txid."""
    entries = body.get("pix")
    if not entries:
        entries = [body]
    if not isinstance(entries, list):
        raise MalformedPayload("pix must be a list")

    events = []
    for entry in entries:
        if not isinstance(entry, dict) or not entry.get("txid"):
            raise MalformedPayload("PIX notification without txid", {"entry": entry})
        events.append(WebhookEvent(
            reference=entry["txid"],
            reference_kind="payment_id",
            status=normalize_pix_status(entry.get("status") or body.get("status")),
            payment_id=entry["txid"],
        ))
    return events


def parse_generic_event(body: Dict[str, Any]) -> WebhookEvent:
    """{"transactionId", "status", "paymentId"?} with status in the transaction vocabulary."""
    if not body.get("transactionId") or not body.get("status"):
        raise MalformedPayload("Missing required webhook data: transactionId and status")
    try:
        return WebhookEvent(
            reference=body["transactionId"],
            reference_kind="transaction_id",
            status=body["status"],
            payment_id=body.get("paymentId"),
        )
    except ValidationError:
        raise MalformedPayload(f"Unknown payment status: {body['status']}", {"status": body["status"]})


class WebhookReconciler:
    """Verifies, parses and applies inbound payment status updates."""

    def __init__(
        self,
        ledger: Ledger,
        engine: FulfillmentEngine,
        delivery: DeliveryCoordinator,
        secrets: Dict[str, str],
        signature_required: bool = True
    ):
        self._ledger = ledger
        self._engine = engine
        self._delivery = delivery
        self._secrets = secrets
        self._signature_required = signature_required

    def verify(self, raw_body: bytes, signature: Optional[str], source: str) -> None:
        """
        Check the source's HMAC signature over the raw body.

        An unconfigured secret is accepted only when signatures are not required.

        Raises:
            AuthenticationError: signature missing or wrong
        """
        secret = self._secrets.get(source, "")
        if not secret and not self._signature_required:
            logger.warning(f"Webhook secret for {source} not configured, skipping signature validation")
            return

        if not verify_signature(raw_body, signature, secret):
            logger.warning(f"Invalid {source} webhook signature")
            raise AuthenticationError("Invalid webhook signature", {"source": source})

    async def handle(
        self,
        raw_body: bytes,
        signature: Optional[str],
        envelope: str
    ) -> List[ReconcileOutcome]:
        """
        Process one payment webhook.

        Args:
            raw_body: Exact bytes received
            signature: Signature header value
            envelope: "pix" or "generic"

        Returns:
            One ReconcileOutcome per event in the envelope; events whose
            transaction is unknown are logged and reported as "unknown"

        Raises:
            AuthenticationError: bad signature (nothing touched)
            MalformedPayload: unparseable body
            UnknownTransaction: no event in the envelope references a known transaction
        """
        self.verify(raw_body, signature, envelope)

        body = _load_json(raw_body)
        if envelope == "pix":
            events = parse_pix_events(body)
        else:
            events = [parse_generic_event(body)]

        # A batch may carry charges that are not ours; each event stands alone
        outcomes = []
        for event in events:
            try:
                transaction = await self._resolve(event)
            except UnknownTransaction:
                outcomes.append(ReconcileOutcome(reference=event.reference, action="unknown"))
                continue

            if event.payment_id and transaction.payment_id is None:
                await self._ledger.attach_payment(transaction.id, event.payment_id, actor=f"webhook:{envelope}")

            await self._ledger.log_activity(
                f"webhook:{envelope}", "webhook_received", "transaction", transaction.id, transaction.user_id,
                {"status": event.status, "payment_id": event.payment_id, "current_status": transaction.status}
            )
            outcomes.append(await self.apply_status(transaction, event.status, source=f"webhook:{envelope}"))

        if all(outcome.action == "unknown" for outcome in outcomes):
            raise UnknownTransaction(
                "Transaction not found",
                {"references": [outcome.reference for outcome in outcomes]}
            )
        return outcomes

    async def handle_delivery_confirmation(self, raw_body: bytes, signature: Optional[str]) -> str:
        """
        Process a game-server delivery confirmation {"grantId", "status", "identifier"}.

        Returns:
            Grant status before the confirmation
        """
        self.verify(raw_body, signature, "game_server")

        body = _load_json(raw_body)
        grant_id, status, identifier = body.get("grantId"), body.get("status"), body.get("identifier")
        if not grant_id or not status or not identifier:
            raise MalformedPayload("Missing required delivery data: grantId, status and identifier")

        return await self._delivery.confirm_delivery(
            grant_id, status, identifier=identifier, message=body.get("message")
        )

    async def apply_status(self, transaction: Transaction, status: str, source: str) -> ReconcileOutcome:
        """
        Idempotently move a transaction to status.

        Safe to call any number of times with the same status: the ledger
        compare-and-set lets exactly one caller out of pending, and only that
        caller runs fulfillment or the failure path.
        """
        if status == "pending":
            return ReconcileOutcome(
                transaction_id=transaction.id,
                previous_status=transaction.status,
                status=transaction.status,
                action="ignored",
            )

        previous = await self._ledger.update_transaction_status(transaction.id, status, actor=source)

        if previous != "pending":
            logger.info(f"Duplicate {status} notification for transaction {transaction.id} (already {previous})")
            return ReconcileOutcome(
                transaction_id=transaction.id,
                previous_status=previous,
                status=previous,
                action="duplicate",
            )

        if status == "approved":
            report = await self._engine.fulfill(transaction.id)
            return ReconcileOutcome(
                transaction_id=transaction.id,
                previous_status="pending",
                status="approved",
                action="fulfilled",
                grants_created=report.grants_created,
            )

        logger.info(f"Payment {status} for transaction {transaction.id} (source={source})")
        await self._ledger.log_activity(
            source, "payment_failed", "transaction", transaction.id, transaction.user_id,
            {
                "status": status,
                "reason": "Payment cancelled" if status == "cancelled" else "Payment failed",
            }
        )
        return ReconcileOutcome(
            transaction_id=transaction.id,
            previous_status="pending",
            status=status,
            action="failed",
        )

    async def _resolve(self, event: WebhookEvent) -> Transaction:
        if event.reference_kind == "payment_id":
            transaction = await self._ledger.find_transaction_by_payment_ref(event.reference)
        else:
            transaction = await self._ledger.get_transaction(event.reference)

        if transaction is None:
            logger.warning(f"Transaction not found for webhook: {event.reference_kind}={event.reference}")
            raise UnknownTransaction(
                "Transaction not found",
                {event.reference_kind: event.reference}
            )
        return transaction
