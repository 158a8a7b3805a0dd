"""
Delivery Coordinator

Pushes grants to the game server and records the outcome on the grant.

The game server is only reachable while it runs and a delivery only lands
while the recipient is connected, so delivery never raises for boundary
errors: every failure becomes a DeliveryResult with a retry hint.

Retry hints:
- Recipient offline: retry_after_offline (default 300s)
- Server unreachable or unknown failure: retry_after_transient (default 60s)

Three retry paths exist:
- deliver_with_retry: bounded loop with an injectable sleep
- redeliver: administrator path, the only one allowed to move failed → delivered
- process_pending_queue: one attempt per pending grant, failures stay pending

Every path delivers under the grant's delivery lease, so a grant whose first
attempt is still in flight is never pushed a second time by another caller.
"""
import asyncio
import logging
from collections import Counter
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Optional, Sequence

from ..clients.game_server import GameServerBoundary, validate_identifier
from ..exceptions import (
    InvalidTransition,
    MalformedPayload,
    StoreError,
    UnknownGrant,
)
from ..models.grants import DeliveryResult, Grant, QueueReport, QueueSnapshot
from .ledger import Ledger

logger = logging.getLogger(__name__)


class DeliveryCoordinator:
    """
    Delivery protocol against the game server boundary.

    Account effects are never applied here; they belong to grant creation in
    the fulfillment engine, so repeating a delivery cannot repeat an effect.
    """

    def __init__(
        self,
        ledger: Ledger,
        game_server: GameServerBoundary,
        attempts: int = 3,
        retry_delay_seconds: float = 5.0,
        retry_after_offline_seconds: int = 300,
        retry_after_transient_seconds: int = 60,
        lease_seconds: int = 120,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self._ledger = ledger
        self._game_server = game_server
        self._attempts = attempts
        self._retry_delay = retry_delay_seconds
        self._retry_after_offline = retry_after_offline_seconds
        self._retry_after_transient = retry_after_transient_seconds
        self._lease_seconds = lease_seconds
        self._sleep = sleep

    @asynccontextmanager
    async def lease(
        self,
        grant: Grant,
        allowed_from: Sequence[str] = ("pending",),
        held: bool = False
    ) -> AsyncIterator[bool]:
        """
        Hold the grant's delivery lease for the body of the block.

        Yields False when another caller holds a fresh lease or the grant left
        allowed_from; the body must then leave the grant alone. The lease is
        released on exit, after the body has recorded the grant status.

        Args:
            grant: Grant about to be delivered
            allowed_from: Statuses the grant may be claimed from
            held: The lease was taken at creation (Ledger.create_grant(leased=True))
        """
        claimed = held or await self._ledger.claim_grant(grant.id, self._lease_seconds, allowed_from)
        try:
            yield claimed
        finally:
            if claimed:
                await self._ledger.release_grant(grant.id)

    # ========================================================================
    # Single Attempt
    # ========================================================================

    async def deliver(self, grant: Grant) -> DeliveryResult:
        """
        One delivery attempt for a grant.

        Args:
            grant: Grant to push

        Returns:
            DeliveryResult; skipped=True when the owner has no usable game identity
        """
        user = await self._ledger.get_user(grant.user_id)
        if user is None or not user.game_identifier:
            logger.warning(f"Grant {grant.id}: user {grant.user_id} has no linked game identity, skipped")
            return DeliveryResult(delivered=False, skipped=True, message="No linked game identity")

        identifier = user.game_identifier
        if not validate_identifier(identifier):
            logger.warning(f"Grant {grant.id}: invalid game identity {identifier!r}, skipped")
            return DeliveryResult(delivered=False, skipped=True, message="Invalid game identity")

        try:
            answer = await self._game_server.deliver(
                identifier,
                grant.grant_type,
                grant.grant_data.model_dump(mode="json"),
                grant.transaction_id
            )
        except StoreError as e:
            logger.warning(f"Grant {grant.id}: delivery to {identifier} failed: {e.message}")
            return DeliveryResult(
                delivered=False,
                message=e.message,
                retry_after_seconds=self._retry_after_transient
            )
        except Exception as e:
            logger.error(f"Grant {grant.id}: unexpected delivery error: {e}", exc_info=True)
            return DeliveryResult(
                delivered=False,
                message="Unexpected delivery error",
                retry_after_seconds=self._retry_after_transient
            )

        if answer.success:
            logger.info(f"Grant {grant.id}: delivered to {identifier}")
            return DeliveryResult(delivered=True, message=answer.message or "Delivered", recipient_online=True)

        if answer.recipient_online is False:
            retry_after = self._retry_after_offline
            message = answer.message or "Player offline, delivery queued"
        else:
            retry_after = self._retry_after_transient
            message = answer.message or "Delivery failed"

        logger.info(f"Grant {grant.id}: not delivered ({message}), retry in {retry_after}s")
        return DeliveryResult(
            delivered=False,
            message=message,
            retry_after_seconds=retry_after,
            recipient_online=answer.recipient_online
        )

    # ========================================================================
    # Bounded Retry
    # ========================================================================

    async def deliver_with_retry(
        self,
        grant: Grant,
        attempts: Optional[int] = None,
        delay_seconds: Optional[float] = None
    ) -> DeliveryResult:
        """
        Repeat deliver() until it succeeds or attempts run out.

        Sleeps between attempts only, never after the last one. A skipped
        result ends the loop since retrying cannot resolve a missing identity.
        """
        attempts = self._attempts if attempts is None else attempts
        delay = self._retry_delay if delay_seconds is None else delay_seconds

        result = DeliveryResult(delivered=False, message="No attempt made", attempts=0)
        for attempt in range(1, attempts + 1):
            result = await self.deliver(grant)
            result.attempts = attempt
            if result.delivered or result.skipped:
                return result

            if attempt < attempts:
                logger.debug(f"Grant {grant.id}: attempt {attempt}/{attempts} failed, retrying in {delay}s")
                await self._sleep(delay)

        logger.warning(f"Grant {grant.id}: delivery failed after {attempts} attempts")
        return result

    async def redeliver(self, grant_id: str, actor: str = "admin") -> DeliveryResult:
        """
        Administrator re-delivery of a pending or failed grant.

        Ends in "delivered" on success, "failed" once attempts are exhausted or
        when the recipient cannot be resolved.

        Raises:
            UnknownGrant: if the grant does not exist
            InvalidTransition: if the grant is delivered, or is a failed
                local-effect grant whose account effect never applied
        """
        grant = await self._ledger.get_grant(grant_id)
        if grant is None:
            raise UnknownGrant(f"No grant found with ID: {grant_id}", {"grant_id": grant_id})

        if grant.status == "delivered":
            raise InvalidTransition("Grant already delivered", {"grant_id": grant_id, "status": grant.status})

        if grant.has_local_effect and grant.status == "failed":
            raise InvalidTransition(
                "Account effect for this grant was not applied; issue a new grant instead",
                {"grant_id": grant_id, "grant_type": grant.grant_type}
            )

        async with self.lease(grant, allowed_from=("pending", "failed")) as claimed:
            if not claimed:
                raise InvalidTransition(
                    "Delivery already in progress",
                    {"grant_id": grant_id, "status": grant.status}
                )

            result = await self.deliver_with_retry(grant)

            if result.delivered or grant.has_local_effect:
                await self._ledger.update_grant_status(
                    grant_id, "delivered", actor=actor, allowed_from=("pending", "failed"),
                    details={"attempts": result.attempts, "message": result.message}
                )
            else:
                await self._ledger.update_grant_status(
                    grant_id, "failed", actor=actor,
                    details={"attempts": result.attempts, "message": result.message}
                )

        return result

    # ========================================================================
    # Backlog
    # ========================================================================

    async def process_pending_queue(self, actor: str = "system") -> QueueReport:
        """
        One pass over every pending grant, one attempt each.

        Grants that still cannot be delivered stay pending for the next pass;
        only redeliver() marks grants failed. Grants whose delivery lease is
        held elsewhere are counted as in_progress and left alone.
        """
        grants = await self._ledger.list_pending_grants()
        report = QueueReport()

        logger.info(f"Processing delivery queue: {len(grants)} pending grants")

        for grant in grants:
            try:
                async with self.lease(grant) as claimed:
                    if not claimed:
                        logger.debug(f"Grant {grant.id} is being delivered elsewhere, skipping")
                        report.in_progress += 1
                        continue

                    report.processed += 1
                    result = await self.deliver(grant)

                    if result.delivered or grant.has_local_effect:
                        await self._ledger.update_grant_status(
                            grant.id, "delivered", actor=actor, details={"message": result.message}
                        )
                        report.delivered += 1
                    elif result.skipped:
                        report.skipped += 1
                    else:
                        report.failed += 1
            except Exception as e:
                logger.error(f"Error processing grant {grant.id} from queue: {e}", exc_info=True)
                report.failed += 1

        logger.info(
            f"Delivery queue processed: processed={report.processed}, delivered={report.delivered}, "
            f"failed={report.failed}, skipped={report.skipped}, in_progress={report.in_progress}"
        )
        return report

    async def queue_snapshot(self, limit: int = 50) -> QueueSnapshot:
        """Pending backlog, oldest first, with per-type counts."""
        pending = await self._ledger.list_pending_grants()
        by_type = Counter(grant.grant_type for grant in pending)
        return QueueSnapshot(
            total=len(pending),
            by_type=dict(by_type),
            items=pending[:limit],
            has_more=len(pending) > limit,
        )

    # ========================================================================
    # Game Server Callbacks
    # ========================================================================

    async def confirm_delivery(
        self,
        grant_id: str,
        status: str,
        identifier: Optional[str] = None,
        actor: str = "game_server",
        message: Optional[str] = None
    ) -> str:
        """
        Apply a delivery confirmation sent by the game server.

        Only pending grants change; a failed grant needs administrator
        re-delivery to become delivered.

        Returns:
            Grant status before the call

        Raises:
            MalformedPayload: unknown status or identity not matching the owner
            UnknownGrant: if the grant does not exist
        """
        if status not in ("delivered", "failed"):
            raise MalformedPayload(f"Unknown delivery status: {status}", {"grant_id": grant_id})

        grant = await self._ledger.get_grant(grant_id)
        if grant is None:
            logger.warning(f"Grant not found for delivery confirmation: {grant_id}")
            raise UnknownGrant(f"No grant found with ID: {grant_id}", {"grant_id": grant_id})

        if identifier:
            owner = await self._ledger.get_user(grant.user_id)
            if owner is None or owner.game_identifier != identifier:
                logger.warning(f"Delivery confirmation for grant {grant_id} from non-owner {identifier}")
                raise MalformedPayload(
                    "Identifier does not match the grant owner",
                    {"grant_id": grant_id, "identifier": identifier}
                )

        return await self._ledger.update_grant_status(
            grant_id, status, actor=actor,
            details={"identifier": identifier, "message": message}
        )
