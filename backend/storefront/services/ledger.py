"""
Ledger Service

Owns transaction and grant records and the account fields fulfillment
mutates. Every write is a single-record statement inside its own database
transaction:

- Status changes are compare-and-set updates, so two concurrent webhook
  deliveries cannot both move a transaction out of "pending"
- Balance changes are in-place increments or conditional updates, never
  snapshot-then-overwrite
- Every status change appends an audit entry in the same database transaction
"""
import json
import logging
import secrets
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import case, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db.models import (
    AuditLogModel,
    GrantModel,
    ProductModel,
    TransactionModel,
    UserModel,
    utcnow,
)
from ..exceptions import ConcurrentUpdateError, UnknownGrant, UnknownTransaction, UnknownUser
from ..models.accounts import AuditEntry, Product, UserAccount
from ..models.catalog import GrantData, LineItem
from ..models.grants import Grant
from ..models.transactions import Transaction

logger = logging.getLogger(__name__)

TRANSACTION_STATUSES = ("pending", "approved", "cancelled", "failed")
GRANT_STATUSES = ("pending", "delivered", "failed")

# Conditional VIP updates retried this many times before giving up
MAX_CAS_RETRIES = 5


class Ledger:
    """
    Record repository for the fulfillment pipeline.

    Fulfillment, delivery and webhook reconciliation write only through this
    class; none of them touch the session directly.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    # ========================================================================
    # Transactions
    # ========================================================================

    async def create_transaction(
        self,
        user_id: int,
        line_items: Sequence[LineItem],
        currency: str = "BRL",
        payment_method: str = "pix",
        expires_at: Optional[datetime] = None,
        actor: str = "system"
    ) -> Transaction:
        """
        Create a pending transaction from a line item snapshot.

        Args:
            user_id: Buyer
            line_items: Snapshot taken at checkout (order preserved)
            currency: ISO currency code
            payment_method: Payment method tag
            expires_at: When an unpaid checkout should be cancelled
            actor: Audit actor

        Returns:
            Created Transaction

        Raises:
            pydantic.ValidationError: if the snapshot violates the amount invariant
        """
        transaction_id = secrets.token_urlsafe(16)
        now = utcnow()
        amount_cents = sum(item.subtotal_cents for item in line_items)

        # Validate with Pydantic before anything is written
        transaction = Transaction(
            id=transaction_id,
            user_id=user_id,
            amount_cents=amount_cents,
            currency=currency,
            status="pending",
            payment_method=payment_method,
            expires_at=expires_at,
            line_items=list(line_items),
            created_at=now,
            updated_at=now,
        )

        async with self._session_factory() as db, db.begin():
            db.add(TransactionModel(
                id=transaction_id,
                user_id=user_id,
                amount_cents=amount_cents,
                currency=currency,
                status="pending",
                payment_method=payment_method,
                expires_at=expires_at,
                line_items=_dump_line_items(transaction.line_items),
                created_at=now,
                updated_at=now,
            ))
            self._audit(
                db, actor, "transaction_created", "transaction", transaction_id, user_id,
                {"after": {"status": "pending", "amount_cents": amount_cents, "item_count": len(line_items)}}
            )

        logger.info(
            f"Created transaction: {transaction_id}, user={user_id}, "
            f"amount={amount_cents}, items={len(line_items)}"
        )
        return transaction

    async def update_transaction_status(
        self,
        transaction_id: str,
        status: str,
        actor: str = "system",
        details: Optional[Dict[str, Any]] = None
    ) -> str:
        """
        Move a transaction out of "pending" (compare-and-set).

        Only a pending transaction changes. When the transaction already left
        pending the call is a no-op, so exactly one of several concurrent
        callers sees "pending" as the previous status.

        Args:
            transaction_id: Transaction identifier
            status: Target status
            actor: Audit actor
            details: Extra audit context

        Returns:
            Status before the call (equal to the current status on a no-op)

        Raises:
            UnknownTransaction: if the transaction does not exist
            ValueError: if status is not a transaction status
        """
        if status not in TRANSACTION_STATUSES:
            raise ValueError(f"Invalid transaction status: {status}")

        async with self._session_factory() as db, db.begin():
            if status != "pending":
                result = await db.execute(
                    update(TransactionModel)
                    .where(
                        TransactionModel.id == transaction_id,
                        TransactionModel.status == "pending"
                    )
                    .values(status=status, updated_at=utcnow())
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    user_id = await db.scalar(
                        select(TransactionModel.user_id).where(TransactionModel.id == transaction_id)
                    )
                    self._audit(
                        db, actor, "transaction_status_changed", "transaction", transaction_id, user_id,
                        {"before": {"status": "pending"}, "after": {"status": status}, **(details or {})}
                    )
                    logger.info(f"Transaction {transaction_id}: pending -> {status} (by {actor})")
                    return "pending"

            current = await db.scalar(
                select(TransactionModel.status).where(TransactionModel.id == transaction_id)
            )

        if current is None:
            raise UnknownTransaction(
                f"No transaction found with ID: {transaction_id}",
                {"transaction_id": transaction_id}
            )

        if current != status:
            logger.info(f"Transaction {transaction_id}: {current} -> {status} ignored, already terminal")
        return current

    async def attach_payment(
        self,
        transaction_id: str,
        payment_id: str,
        qr_code: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        actor: str = "system"
    ) -> None:
        """
        Record the provider's charge reference on a transaction.

        Raises:
            UnknownTransaction: if the transaction does not exist
        """
        values: Dict[str, Any] = {"payment_id": payment_id, "updated_at": utcnow()}
        if qr_code is not None:
            values["qr_code"] = qr_code
        if expires_at is not None:
            values["expires_at"] = expires_at

        async with self._session_factory() as db, db.begin():
            result = await db.execute(
                update(TransactionModel)
                .where(TransactionModel.id == transaction_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise UnknownTransaction(
                    f"No transaction found with ID: {transaction_id}",
                    {"transaction_id": transaction_id}
                )
            self._audit(
                db, actor, "payment_attached", "transaction", transaction_id, None,
                {"after": {"payment_id": payment_id}}
            )

        logger.debug(f"Attached payment {payment_id} to transaction {transaction_id}")

    async def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        """
        Retrieve transaction by ID.

        Returns:
            Transaction or None if not found
        """
        async with self._session_factory() as db:
            row = await db.get(TransactionModel, transaction_id)
        return _to_transaction(row) if row else None

    async def find_transaction_by_payment_ref(self, payment_id: str) -> Optional[Transaction]:
        """
        Retrieve transaction by the provider's payment reference (unique index).

        Returns:
            Transaction or None if not found
        """
        async with self._session_factory() as db:
            result = await db.execute(
                select(TransactionModel).where(TransactionModel.payment_id == payment_id)
            )
            row = result.scalar_one_or_none()
        return _to_transaction(row) if row else None

    async def list_expired_pending(self, now: Optional[datetime] = None) -> List[Transaction]:
        """Pending transactions whose payment window has closed."""
        now = now or utcnow()
        async with self._session_factory() as db:
            result = await db.execute(
                select(TransactionModel)
                .where(
                    TransactionModel.status == "pending",
                    TransactionModel.expires_at.is_not(None),
                    TransactionModel.expires_at < now
                )
                .order_by(TransactionModel.expires_at)
            )
            rows = result.scalars().all()
        return [_to_transaction(row) for row in rows]

    # ========================================================================
    # Grants
    # ========================================================================

    async def create_grant(
        self,
        user_id: int,
        grant_type: str,
        grant_data: GrantData,
        transaction_id: Optional[str] = None,
        granted_by: Optional[int] = None,
        actor: str = "system",
        leased: bool = False
    ) -> Grant:
        """
        Create a pending grant.

        leased=True creates the grant with its delivery lease already held, so
        no queue pass can pick it up before the creator releases it.

        Args:
            user_id: Grant owner
            grant_type: Product type tag (coins, vip, vehicle, weapon, item)
            grant_data: Typed payload and product reference
            transaction_id: Source transaction, None for admin grants
            granted_by: Issuing admin, None for system grants
            actor: Audit actor
            leased: Hold the delivery lease from creation

        Returns:
            Created Grant

        Raises:
            ValueError: if the payload type does not match grant_type
        """
        if grant_data.payload.type != grant_type:
            raise ValueError(f"Payload type {grant_data.payload.type} != grant type {grant_type}")

        grant = Grant(
            id=str(uuid.uuid4()),
            transaction_id=transaction_id,
            user_id=user_id,
            grant_type=grant_type,
            grant_data=grant_data,
            status="pending",
            granted_by=granted_by,
            granted_at=utcnow(),
        )

        async with self._session_factory() as db, db.begin():
            db.add(GrantModel(
                id=grant.id,
                transaction_id=transaction_id,
                user_id=user_id,
                grant_type=grant_type,
                grant_data=grant_data.model_dump_json(),
                status="pending",
                granted_by=granted_by,
                granted_at=grant.granted_at,
                delivery_started_at=grant.granted_at if leased else None,
            ))
            self._audit(
                db, actor, "grant_created", "grant", grant.id, user_id,
                {
                    "after": {"status": "pending", "grant_type": grant_type},
                    "transaction_id": transaction_id,
                    "granted_by": granted_by,
                }
            )

        logger.info(f"Created grant: {grant.id}, type={grant_type}, user={user_id}, transaction={transaction_id}")
        return grant

    async def update_grant_status(
        self,
        grant_id: str,
        status: str,
        actor: str = "system",
        allowed_from: Sequence[str] = ("pending",),
        details: Optional[Dict[str, Any]] = None
    ) -> str:
        """
        Move a grant between states (compare-and-set).

        The update applies only while the grant is in one of allowed_from.
        Delivery paths pass ("pending",); explicit administrator re-delivery
        passes ("pending", "failed"). Nothing ever returns to "pending".

        Returns:
            Status before the call (equal to the current status on a no-op)

        Raises:
            UnknownGrant: if the grant does not exist
            ValueError: if status is not a grant status
        """
        if status not in GRANT_STATUSES or status == "pending":
            raise ValueError(f"Invalid grant target status: {status}")

        async with self._session_factory() as db, db.begin():
            for source in allowed_from:
                if source == status:
                    continue
                result = await db.execute(
                    update(GrantModel)
                    .where(GrantModel.id == grant_id, GrantModel.status == source)
                    .values(status=status)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    user_id = await db.scalar(select(GrantModel.user_id).where(GrantModel.id == grant_id))
                    self._audit(
                        db, actor, "grant_status_changed", "grant", grant_id, user_id,
                        {"before": {"status": source}, "after": {"status": status}, **(details or {})}
                    )
                    logger.info(f"Grant {grant_id}: {source} -> {status} (by {actor})")
                    return source

            current = await db.scalar(select(GrantModel.status).where(GrantModel.id == grant_id))

        if current is None:
            raise UnknownGrant(f"No grant found with ID: {grant_id}", {"grant_id": grant_id})

        if current != status:
            logger.info(f"Grant {grant_id}: {current} -> {status} not allowed, left unchanged")
        return current

    async def claim_grant(
        self,
        grant_id: str,
        lease_seconds: int,
        allowed_from: Sequence[str] = ("pending",),
        now: Optional[datetime] = None
    ) -> bool:
        """
        Take the delivery lease on a grant (compare-and-set).

        Succeeds only while the grant is in one of allowed_from and no other
        caller holds a lease younger than lease_seconds. A lease older than
        that belongs to a caller that died mid-delivery and is taken over.

        Returns:
            True if this caller now holds the lease
        """
        now = now or utcnow()
        stale_before = now - timedelta(seconds=lease_seconds)

        async with self._session_factory() as db, db.begin():
            result = await db.execute(
                update(GrantModel)
                .where(
                    GrantModel.id == grant_id,
                    GrantModel.status.in_(allowed_from),
                    or_(
                        GrantModel.delivery_started_at.is_(None),
                        GrantModel.delivery_started_at < stale_before,
                    ),
                )
                .values(delivery_started_at=now)
                .execution_options(synchronize_session=False)
            )
        return result.rowcount == 1

    async def release_grant(self, grant_id: str) -> None:
        """Drop the delivery lease so the next queue pass may retry the grant."""
        async with self._session_factory() as db, db.begin():
            await db.execute(
                update(GrantModel)
                .where(GrantModel.id == grant_id)
                .values(delivery_started_at=None)
                .execution_options(synchronize_session=False)
            )

    async def get_grant(self, grant_id: str) -> Optional[Grant]:
        """
        Retrieve grant by ID.

        Returns:
            Grant or None if not found
        """
        async with self._session_factory() as db:
            row = await db.get(GrantModel, grant_id)
        return _to_grant(row) if row else None

    async def list_pending_grants(self, limit: Optional[int] = None) -> List[Grant]:
        """Pending grants, oldest first."""
        query = (
            select(GrantModel)
            .where(GrantModel.status == "pending")
            .order_by(GrantModel.granted_at, GrantModel.id)
        )
        if limit is not None:
            query = query.limit(limit)

        async with self._session_factory() as db:
            result = await db.execute(query)
            rows = result.scalars().all()
        return [_to_grant(row) for row in rows]

    async def count_pending_grants(self) -> int:
        async with self._session_factory() as db:
            count = await db.scalar(
                select(func.count()).select_from(GrantModel).where(GrantModel.status == "pending")
            )
        return count or 0

    async def list_grants(
        self,
        status: Optional[str] = None,
        user_id: Optional[int] = None,
        transaction_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0
    ) -> List[Grant]:
        """
        Grants filtered by status, owner or source transaction (most recent first).
        """
        query = select(GrantModel)
        if status:
            query = query.where(GrantModel.status == status)
        if user_id is not None:
            query = query.where(GrantModel.user_id == user_id)
        if transaction_id:
            query = query.where(GrantModel.transaction_id == transaction_id)
        query = query.order_by(GrantModel.granted_at.desc()).limit(limit).offset(offset)

        async with self._session_factory() as db:
            result = await db.execute(query)
            rows = result.scalars().all()
        return [_to_grant(row) for row in rows]

    # ========================================================================
    # Accounts and Stock
    # ========================================================================

    async def get_user(self, user_id: int) -> Optional[UserAccount]:
        async with self._session_factory() as db:
            row = await db.get(UserModel, user_id)
        return UserAccount.model_validate(row) if row else None

    async def get_user_by_game_identifier(self, identifier: str) -> Optional[UserAccount]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(UserModel).where(UserModel.game_identifier == identifier)
            )
            row = result.scalar_one_or_none()
        return UserAccount.model_validate(row) if row else None

    async def credit_coins(
        self,
        user_id: int,
        amount: int,
        actor: str = "system",
        grant_id: Optional[str] = None
    ) -> int:
        """
        Add coins to a balance with an in-place increment.

        Additions are unconditional; the non-negative invariant is enforced
        where coins are spent.

        Returns:
            New balance

        Raises:
            UnknownUser: if the user does not exist
        """
        if amount <= 0:
            raise ValueError(f"Coin credit must be positive, got {amount}")

        async with self._session_factory() as db, db.begin():
            result = await db.execute(
                update(UserModel)
                .where(UserModel.id == user_id)
                .values(coins=UserModel.coins + amount, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise UnknownUser(f"No user found with ID: {user_id}", {"user_id": user_id})

            balance = await db.scalar(select(UserModel.coins).where(UserModel.id == user_id))
            self._audit(
                db, actor, "coins_credited", "user", str(user_id), user_id,
                {"before": {"coins": balance - amount}, "after": {"coins": balance}, "grant_id": grant_id}
            )

        logger.info(f"Coins added to user {user_id}: +{amount} (balance={balance})")
        return balance

    async def extend_vip(
        self,
        user_id: int,
        level: str,
        duration: timedelta,
        now: Optional[datetime] = None,
        stacking: str = "extend",
        actor: str = "system",
        grant_id: Optional[str] = None
    ) -> datetime:
        """
        Set the VIP tier and push its expiry forward.

        stacking="extend": expiry = max(now, current expiry) + duration
        stacking="reset":  expiry = now + duration

        The write is conditional on the expiry read just before it; a
        concurrent change makes the update miss and the computation is redone.

        Returns:
            New expiry timestamp

        Raises:
            UnknownUser: if the user does not exist
            ConcurrentUpdateError: if every retry lost to a concurrent writer
        """
        now = now or utcnow()

        for attempt in range(1, MAX_CAS_RETRIES + 1):
            async with self._session_factory() as db:
                row = (await db.execute(
                    select(UserModel.vip_level, UserModel.vip_expires_at).where(UserModel.id == user_id)
                )).one_or_none()

            if row is None:
                raise UnknownUser(f"No user found with ID: {user_id}", {"user_id": user_id})

            current_level, current_expiry = row
            if stacking == "extend" and current_expiry is not None and current_expiry > now:
                new_expiry = current_expiry + duration
            else:
                new_expiry = now + duration

            if current_expiry is None:
                unchanged = UserModel.vip_expires_at.is_(None)
            else:
                unchanged = UserModel.vip_expires_at == current_expiry

            async with self._session_factory() as db, db.begin():
                result = await db.execute(
                    update(UserModel)
                    .where(UserModel.id == user_id, unchanged)
                    .values(vip_level=level, vip_expires_at=new_expiry, updated_at=utcnow())
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    self._audit(
                        db, actor, "vip_extended", "user", str(user_id), user_id,
                        {
                            "before": {"vip_level": current_level, "vip_expires_at": _iso(current_expiry)},
                            "after": {"vip_level": level, "vip_expires_at": _iso(new_expiry)},
                            "grant_id": grant_id,
                        }
                    )
                    logger.info(f"VIP status updated for user {user_id}: level={level}, expires={new_expiry}")
                    return new_expiry

            logger.debug(f"VIP expiry for user {user_id} changed concurrently, retry {attempt}")

        raise ConcurrentUpdateError(
            f"Could not update VIP status for user {user_id}",
            {"user_id": user_id, "attempts": MAX_CAS_RETRIES}
        )

    async def get_product(self, product_id: int) -> Optional[Product]:
        async with self._session_factory() as db:
            row = await db.get(ProductModel, product_id)
        if row is None:
            return None
        return Product(
            id=row.id,
            code=row.code,
            name=row.name,
            price_cents=row.price_cents,
            type=row.type,
            data=json.loads(row.data) if row.data else None,
            active=row.active,
            stock=row.stock,
        )

    async def decrement_stock(self, product_id: int, quantity: int) -> Optional[int]:
        """
        Remove sold units from finite stock, floored at zero.

        Returns:
            Remaining stock, or None for unlimited/unknown products
        """
        async with self._session_factory() as db, db.begin():
            result = await db.execute(
                update(ProductModel)
                .where(ProductModel.id == product_id, ProductModel.stock != -1)
                .values(stock=case((ProductModel.stock > quantity, ProductModel.stock - quantity), else_=0))
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                return None
            remaining = await db.scalar(select(ProductModel.stock).where(ProductModel.id == product_id))

        logger.debug(f"Stock for product {product_id}: -{quantity} -> {remaining}")
        return remaining

    # ========================================================================
    # Audit Log
    # ========================================================================

    async def log_activity(
        self,
        actor: str,
        action: str,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        user_id: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None
    ) -> None:
        """Append a standalone audit entry (events that change no record)."""
        async with self._session_factory() as db, db.begin():
            self._audit(db, actor, action, entity_type, entity_id, user_id, details or {})

    async def list_audit_entries(
        self,
        entity_id: Optional[str] = None,
        action: Optional[str] = None,
        limit: int = 100
    ) -> List[AuditEntry]:
        query = select(AuditLogModel)
        if entity_id:
            query = query.where(AuditLogModel.entity_id == entity_id)
        if action:
            query = query.where(AuditLogModel.action == action)
        query = query.order_by(AuditLogModel.id).limit(limit)

        async with self._session_factory() as db:
            result = await db.execute(query)
            rows = result.scalars().all()

        return [
            AuditEntry(
                id=row.id,
                actor=row.actor,
                action=row.action,
                entity_type=row.entity_type,
                entity_id=row.entity_id,
                user_id=row.user_id,
                details=json.loads(row.details) if row.details else {},
                created_at=row.created_at,
            )
            for row in rows
        ]

    @staticmethod
    def _audit(
        db: AsyncSession,
        actor: str,
        action: str,
        entity_type: Optional[str],
        entity_id: Optional[str],
        user_id: Optional[int],
        details: Dict[str, Any]
    ) -> None:
        db.add(AuditLogModel(
            actor=actor,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            user_id=user_id,
            details=json.dumps(details, default=str),
        ))


# ============================================================================
# Row Conversion
# ============================================================================

def _dump_line_items(line_items: Sequence[LineItem]) -> str:
    return json.dumps([item.model_dump(mode="json") for item in line_items])


def _to_transaction(row: TransactionModel) -> Transaction:
    return Transaction(
        id=row.id,
        user_id=row.user_id,
        amount_cents=row.amount_cents,
        currency=row.currency or "BRL",
        status=row.status,
        payment_method=row.payment_method,
        payment_id=row.payment_id,
        qr_code=row.qr_code,
        expires_at=row.expires_at,
        line_items=json.loads(row.line_items),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _to_grant(row: GrantModel) -> Grant:
    return Grant(
        id=row.id,
        transaction_id=row.transaction_id,
        user_id=row.user_id,
        grant_type=row.grant_type,
        grant_data=GrantData.model_validate_json(row.grant_data),
        status=row.status,
        granted_by=row.granted_by,
        granted_at=row.granted_at,
    )


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None
