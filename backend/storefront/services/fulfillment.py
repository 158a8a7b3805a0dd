"""
Fulfillment Engine

Turns an approved transaction into grants. Each line item is fulfilled inside
its own error boundary:

1. Create a pending grant carrying the typed payload, already under its
   delivery lease so the pending queue leaves it alone
2. Apply the account effect (coins credit, VIP extension) exactly once
3. Attempt delivery once
4. Decrement finite stock, floored at zero

A failing line item is logged and counted; the remaining items still run and
the transaction stays approved. Undelivered grants are picked up by the
pending queue job.
"""
import logging
from datetime import timedelta
from typing import Optional

from ..exceptions import InvalidTransition, UnknownTransaction, UnknownUser
from ..models.catalog import CoinsPayload, GrantData, GrantPayload, VipPayload
from ..models.grants import FulfillmentReport, Grant, GrantStatus, ItemOutcome
from .delivery import DeliveryCoordinator
from .ledger import Ledger

logger = logging.getLogger(__name__)


class FulfillmentEngine:
    """Creates grants, applies account effects and triggers first delivery."""

    def __init__(
        self,
        ledger: Ledger,
        delivery: DeliveryCoordinator,
        vip_stacking: str = "extend"
    ):
        self._ledger = ledger
        self._delivery = delivery
        self._vip_stacking = vip_stacking

    async def fulfill(self, transaction_id: str) -> FulfillmentReport:
        """
        Fulfill every line item of an approved transaction.

        Callers must run this only after winning the pending → approved
        transition, so each transaction is fulfilled once.

        Args:
            transaction_id: Approved transaction

        Returns:
            FulfillmentReport with one ItemOutcome per line item

        Raises:
            UnknownTransaction: if the transaction does not exist
            InvalidTransition: if the transaction is not approved
        """
        transaction = await self._ledger.get_transaction(transaction_id)
        if transaction is None:
            raise UnknownTransaction(
                f"No transaction found with ID: {transaction_id}",
                {"transaction_id": transaction_id}
            )

        if transaction.status != "approved":
            logger.warning(f"Refusing to fulfill transaction {transaction_id} in status {transaction.status}")
            raise InvalidTransition(
                "Only approved transactions can be fulfilled",
                {"transaction_id": transaction_id, "status": transaction.status}
            )

        logger.info(f"Fulfilling transaction {transaction_id}: {len(transaction.line_items)} items")
        report = FulfillmentReport(transaction_id=transaction_id)

        for index, item in enumerate(transaction.line_items):
            outcome = ItemOutcome(index=index, product_type=item.product_type)
            try:
                grant = await self._ledger.create_grant(
                    transaction.user_id,
                    item.product_type,
                    GrantData.from_line_item(item),
                    transaction_id=transaction_id,
                    leased=True,
                )
                outcome.grant_id = grant.id
                report.grants_created += 1

                outcome.grant_status = await self._complete(grant)

                remaining = await self._ledger.decrement_stock(item.product_id, item.quantity)
                if remaining == 0:
                    logger.info(f"Product {item.product_id} ({item.product_code}) is now out of stock")
            except Exception as e:
                logger.error(
                    f"Failed to fulfill item {index} ({item.product_code}) of transaction {transaction_id}: {e}",
                    exc_info=True
                )
                outcome.error = str(e)
                report.items_failed += 1

            report.items.append(outcome)

        await self._ledger.log_activity(
            "system", "payment_processed", "transaction", transaction_id, transaction.user_id,
            {
                "amount_cents": transaction.amount_cents,
                "item_count": len(transaction.line_items),
                "grants_created": report.grants_created,
                "items_failed": report.items_failed,
            }
        )

        logger.info(
            f"Transaction {transaction_id} fulfilled: grants={report.grants_created}, "
            f"failed_items={report.items_failed}"
        )
        return report

    async def issue_grant(
        self,
        user_id: int,
        payload: GrantPayload,
        granted_by: Optional[int] = None,
        transaction_id: Optional[str] = None,
        with_retry: bool = False,
        product_name: Optional[str] = None,
        quantity: int = 1
    ) -> Grant:
        """
        Issue a grant outside checkout (administrator grant).

        The account effect is applied once here; delivery uses a single
        attempt or the bounded retry loop.

        Returns:
            The grant as stored after delivery

        Raises:
            UnknownUser: if the recipient does not exist
        """
        user = await self._ledger.get_user(user_id)
        if user is None:
            raise UnknownUser(f"No user found with ID: {user_id}", {"user_id": user_id})

        grant = await self._ledger.create_grant(
            user_id,
            payload.type,
            GrantData(product_name=product_name, quantity=quantity, payload=payload),
            transaction_id=transaction_id,
            granted_by=granted_by,
            actor=f"admin:{granted_by}" if granted_by is not None else "system",
            leased=True,
        )

        await self._complete(grant, with_retry=with_retry)
        return await self._ledger.get_grant(grant.id)

    async def _complete(self, grant: Grant, with_retry: bool = False) -> GrantStatus:
        """Apply the account effect, attempt delivery, record the grant status.

        The grant was created leased; the lease is released once the status
        is recorded.
        """
        async with self._delivery.lease(grant, held=True):
            if grant.has_local_effect:
                try:
                    await self._apply_effect(grant)
                except Exception as e:
                    await self._ledger.update_grant_status(
                        grant.id, "failed", details={"error": str(e), "effect_applied": False}
                    )
                    raise

            if with_retry:
                result = await self._delivery.deliver_with_retry(grant)
            else:
                result = await self._delivery.deliver(grant)

            # Local-effect grants are complete once the account changed; the game
            # server call only notifies the player.
            if result.delivered or grant.has_local_effect:
                await self._ledger.update_grant_status(
                    grant.id, "delivered", details={"message": result.message, "attempts": result.attempts}
                )
                return "delivered"

            return "pending"

    async def _apply_effect(self, grant: Grant) -> None:
        payload = grant.grant_data.payload
        quantity = grant.grant_data.quantity

        if isinstance(payload, CoinsPayload):
            await self._ledger.credit_coins(
                grant.user_id, payload.amount * quantity, grant_id=grant.id
            )
        elif isinstance(payload, VipPayload):
            await self._ledger.extend_vip(
                grant.user_id,
                payload.level,
                timedelta(days=payload.duration_days * quantity),
                stacking=self._vip_stacking,
                grant_id=grant.id,
            )
