"""
SQLAlchemy ORM Models for the Store

Transactions and grants form the fulfillment ledger; users and products carry
the fields fulfillment mutates (balances, entitlement expiry, stock).
"""
from datetime import datetime, timezone
from sqlalchemy import Column, String, Integer, Boolean, DateTime, ForeignKey, Text, CheckConstraint
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, the format every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class UserModel(Base):
    """
    ORM model for users table.

    Only the account projection fulfillment touches: coin balance, VIP tier and
    expiry, and the linked game identity.
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String(50), nullable=False, unique=True)
    email = Column(String(100), nullable=False, unique=True)
    role = Column(String, nullable=False, default="user")
    game_identifier = Column(String(100), unique=True, index=True)
    coins = Column(Integer, nullable=False, default=0)
    vip_level = Column(String(20), nullable=False, default="none")
    vip_expires_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("coins >= 0", name="coins_non_negative"),
        CheckConstraint("role IN ('user', 'admin', 'super_admin')", name="role_check"),
    )


class ProductModel(Base):
    """
    ORM model for products table.

    stock = -1 marks unlimited stock.
    """
    __tablename__ = "products"

    id = Column(Integer, primary_key=True, autoincrement=True)
    code = Column(String(50), nullable=False, unique=True)
    name = Column(String(100), nullable=False)
    description = Column(Text)
    price_cents = Column(Integer, nullable=False)
    type = Column(String, nullable=False)
    data = Column(Text)  # JSON blob, validated into a typed payload at checkout
    active = Column(Boolean, nullable=False, default=True)
    stock = Column(Integer, nullable=False, default=-1)
    category = Column(String(50))
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("type IN ('coins', 'vip', 'vehicle', 'weapon', 'item')", name="product_type_check"),
        CheckConstraint("price_cents >= 0", name="price_non_negative"),
    )


class TransactionModel(Base):
    """
    ORM model for transactions table.

    One row per checkout attempt. line_items is the immutable snapshot taken at
    checkout; payment_id is unique so webhooks resolve with an indexed lookup.
    """
    __tablename__ = "transactions"

    id = Column(String, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    payment_id = Column(String(100), unique=True, index=True)
    amount_cents = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="BRL")
    status = Column(String, nullable=False, default="pending", index=True)
    payment_method = Column(String(20), nullable=False, default="pix")
    qr_code = Column(Text)
    expires_at = Column(DateTime, index=True)
    line_items = Column(Text, nullable=False)  # JSON array
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("status IN ('pending', 'approved', 'cancelled', 'failed')", name="transaction_status_check"),
        CheckConstraint("amount_cents > 0", name="amount_positive"),
    )


class GrantModel(Base):
    """
    ORM model for grants table.

    One unit of entitlement owed to a user. transaction_id is null and
    granted_by is set for administrator-issued grants.
    """
    __tablename__ = "grants"

    id = Column(String, primary_key=True)
    transaction_id = Column(String, ForeignKey("transactions.id"), index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    grant_type = Column(String(20), nullable=False)
    grant_data = Column(Text, nullable=False)  # JSON blob
    status = Column(String, nullable=False, default="pending", index=True)
    granted_by = Column(Integer, ForeignKey("users.id"))
    granted_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    delivery_started_at = Column(DateTime)  # delivery lease, null when no attempt is in flight

    __table_args__ = (
        CheckConstraint("status IN ('pending', 'delivered', 'failed')", name="grant_status_check"),
    )


class AuditLogModel(Base):
    """
    ORM model for audit_logs table.

    Append-only. details holds before/after snapshots of the mutated fields.
    """
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    actor = Column(String, nullable=False)
    action = Column(String(50), nullable=False, index=True)
    entity_type = Column(String(20))
    entity_id = Column(String, index=True)
    user_id = Column(Integer, index=True)
    details = Column(Text)  # JSON blob
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
