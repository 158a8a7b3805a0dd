"""
Checkout Service

Creates PIX-paid transactions from a cart and exposes their lifecycle to the
API: lookup, on-read status reconciliation, cancellation and expiry.
"""
import logging
from datetime import timedelta
from typing import List, Optional, Sequence, Tuple

from pydantic import BaseModel, Field

from ..clients.payment_provider import PaymentProvider
from ..db.models import utcnow
from ..exceptions import (
    InsufficientStock,
    InvalidTransition,
    PaymentProviderError,
    ProductUnavailable,
    UnknownProduct,
    UnknownTransaction,
    UnknownUser,
)
from ..models.catalog import LineItem, parse_payload
from ..models.transactions import Transaction
from ..models.webhooks import ReconcileOutcome
from .ledger import Ledger
from .webhooks import WebhookReconciler

logger = logging.getLogger(__name__)


class CartItem(BaseModel):
    """One requested product in a checkout."""
    product_id: int
    quantity: int = Field(default=1, gt=0, le=100)


class CheckoutService:
    """Checkout and payment lifecycle on top of the ledger and the provider."""

    def __init__(
        self,
        ledger: Ledger,
        provider: PaymentProvider,
        reconciler: WebhookReconciler,
        currency: str = "BRL",
        transaction_ttl_seconds: int = 900
    ):
        self._ledger = ledger
        self._provider = provider
        self._reconciler = reconciler
        self._currency = currency
        self._ttl = timedelta(seconds=transaction_ttl_seconds)

    async def create_payment(self, user_id: int, items: Sequence[CartItem]) -> Transaction:
        """
        Validate the cart, snapshot it and open a PIX charge.

        The whole cart is rejected before any transaction exists when a product
        is missing, inactive or short on stock.

        Raises:
            UnknownUser: buyer does not exist
            UnknownProduct / ProductUnavailable / InsufficientStock: cart rejected
            PaymentProviderError: charge could not be created (transaction marked failed)
        """
        user = await self._ledger.get_user(user_id)
        if user is None:
            raise UnknownUser(f"No user found with ID: {user_id}", {"user_id": user_id})

        line_items = await self._snapshot(items)

        transaction = await self._ledger.create_transaction(
            user_id,
            line_items,
            currency=self._currency,
            payment_method="pix",
            expires_at=utcnow() + self._ttl,
            actor=f"user:{user_id}",
        )

        try:
            charge = await self._provider.create_charge(
                transaction.amount_cents,
                f"Game Store - Order {transaction.id}",
                transaction.id,
                {"name": user.username, "email": user.email},
            )
        except PaymentProviderError:
            logger.error(f"Failed to create PIX payment for transaction {transaction.id}")
            await self._ledger.update_transaction_status(
                transaction.id, "failed", actor="system", details={"reason": "charge_creation_failed"}
            )
            raise

        await self._ledger.attach_payment(
            transaction.id, charge.payment_id, qr_code=charge.qr_code, expires_at=charge.expires_at,
            actor=f"user:{user_id}"
        )
        await self._ledger.log_activity(
            f"user:{user_id}", "payment_created", "transaction", transaction.id, user_id,
            {"amount_cents": transaction.amount_cents, "payment_method": "pix", "item_count": len(line_items)}
        )

        return await self._ledger.get_transaction(transaction.id)

    async def get_payment(self, transaction_id: str) -> Transaction:
        transaction = await self._ledger.get_transaction(transaction_id)
        if transaction is None:
            raise UnknownTransaction("Payment not found", {"transaction_id": transaction_id})
        return transaction

    async def get_payment_status(self, transaction_id: str) -> Tuple[Transaction, Optional[ReconcileOutcome]]:
        """
        Current status, reconciled against the provider while still pending.

        A provider failure is logged and the stored status returned; the next
        read or webhook reconciles.
        """
        transaction = await self.get_payment(transaction_id)
        if transaction.is_terminal or not transaction.payment_id:
            return transaction, None

        try:
            charge = await self._provider.get_charge_status(transaction.payment_id)
        except PaymentProviderError as e:
            logger.warning(f"Failed to check payment status for {transaction_id}: {e.message}")
            return transaction, None

        if charge.status == "pending":
            return transaction, None

        outcome = await self._reconciler.apply_status(transaction, charge.status, source="status_poll")
        return await self.get_payment(transaction_id), outcome

    async def cancel_payment(self, transaction_id: str, actor: str = "user") -> Transaction:
        """
        Cancel a pending payment.

        Raises:
            UnknownTransaction: if the transaction does not exist
            InvalidTransition: if the transaction is no longer pending
        """
        transaction = await self.get_payment(transaction_id)
        if transaction.is_terminal:
            raise InvalidTransition(
                "Cannot cancel non-pending payment",
                {"transaction_id": transaction_id, "status": transaction.status}
            )

        if transaction.payment_id:
            cancelled = await self._provider.cancel_charge(transaction.payment_id)
            if not cancelled:
                logger.warning(f"Provider did not confirm cancellation of {transaction.payment_id}")

        outcome = await self._reconciler.apply_status(transaction, "cancelled", source=actor)
        if outcome.action == "duplicate":
            raise InvalidTransition(
                "Cannot cancel non-pending payment",
                {"transaction_id": transaction_id, "status": outcome.status}
            )
        return await self.get_payment(transaction_id)

    async def expire_stale_transactions(self) -> int:
        """Cancel pending transactions whose payment window closed. Returns the count."""
        expired = await self._ledger.list_expired_pending()
        count = 0
        for transaction in expired:
            outcome = await self._reconciler.apply_status(transaction, "cancelled", source="expiry_sweep")
            if outcome.action == "failed":
                count += 1

        if count:
            logger.info(f"Expired {count} stale pending transactions")
        return count

    async def _snapshot(self, items: Sequence[CartItem]) -> List[LineItem]:
        if not items:
            raise ValueError("Cart is empty")

        line_items = []
        for item in items:
            product = await self._ledger.get_product(item.product_id)
            if product is None:
                raise UnknownProduct(
                    f"Product with ID {item.product_id} not found",
                    {"product_id": item.product_id}
                )
            if not product.active:
                raise ProductUnavailable(
                    f"Product {product.name} is not available",
                    {"product_id": product.id}
                )
            if not product.unlimited and product.stock < item.quantity:
                raise InsufficientStock(
                    f"Insufficient stock for {product.name}. Available: {product.stock}, Requested: {item.quantity}",
                    {"product_id": product.id, "available": product.stock, "requested": item.quantity}
                )

            line_items.append(LineItem(
                product_id=product.id,
                product_code=product.code,
                name=product.name,
                product_type=product.type,
                unit_price_cents=product.price_cents,
                quantity=item.quantity,
                subtotal_cents=product.price_cents * item.quantity,
                payload=parse_payload(product.type, product.data),
            ))

        if sum(line.subtotal_cents for line in line_items) <= 0:
            raise ValueError("Invalid payment amount")
        return line_items
