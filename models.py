"""
Escrow & Payout Core - Database Schema
======================================

Relational schema for the escrow and payout orchestration core:
- Custodial wallets with sealed secret keys
- Orders with a mirrored on-chain escrow and its append-only transaction log
- Token burn records that back fiat payouts
- Bank details and provider payouts
- Database-backed distributed locks and the webhook event ledger

Amounts in the token's smallest unit (wei) are stored as decimal strings.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, Boolean, Text, JSON,
    ForeignKey, UniqueConstraint, Index, CheckConstraint, text
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, relationship, Mapped, mapped_column

JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class UserRole(Enum):
    """Roles carried by an authenticated principal"""
    BUYER = "buyer"
    SELLER = "seller"
    ADMIN = "admin"


class EscrowStatus(Enum):
    """Escrow lifecycle states, mirroring the contract's currentState()"""
    LOCKED = "Locked"
    RELEASE_PENDING = "ReleasePending"
    DISPUTED = "Disputed"
    COMPLETE = "Complete"
    REFUNDED = "Refunded"

    @classmethod
    def from_contract_state(cls, state: int) -> "EscrowStatus":
        return CONTRACT_STATE_TO_STATUS[state]


CONTRACT_STATE_TO_STATUS = {
    0: EscrowStatus.LOCKED,
    1: EscrowStatus.RELEASE_PENDING,
    2: EscrowStatus.DISPUTED,
    3: EscrowStatus.COMPLETE,
    4: EscrowStatus.REFUNDED,
}


class EscrowTxKind(Enum):
    """Kinds of entries in an escrow's transaction log"""
    CREATED = "created"
    CONFIRM_DELIVERY = "confirm_delivery"
    RELEASE = "release"
    DISPUTE = "dispute"
    RESOLVE = "resolve"
    TIMEOUT_CLAIM = "timeout_claim"


class TxOutcome(Enum):
    """Observed outcome of a submitted transaction"""
    PENDING = "pending"
    SUCCESS = "success"
    REVERTED = "reverted"


class BurnStatus(Enum):
    """Token burn lifecycle"""
    PENDING = "pending"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class PayoutStatus(Enum):
    """Fiat payout lifecycle"""
    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    COMPLETED = "completed"
    FAILED = "failed"
    PENDING_MANUAL = "pending_manual"
    REVERSED = "reversed"


class BankAccountKind(Enum):
    SAVINGS = "savings"
    CURRENT = "current"


# ============================================================================
# CUSTODY
# ============================================================================

class Wallet(Base):
    """Custodial user wallet; the secret key is only ever stored sealed"""
    __tablename__ = "wallets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    address: Mapped[str] = mapped_column(String(42), unique=True, nullable=False)
    # {key_id, nonce, tag, ciphertext} as hex strings
    sealed_secret: Mapped[dict] = mapped_column(JSONType, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<Wallet user={self.user_id} address={self.address}>"


# ============================================================================
# ORDERS AND ESCROWS
# ============================================================================

class Order(Base):
    """Escrow-relevant projection of a finalized marketplace order"""
    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    buyer_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    seller_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

    escrow: Mapped[Optional["Escrow"]] = relationship(
        "Escrow", back_populates="order", uselist=False, lazy="selectin"
    )


class Escrow(Base):
    """
    Mirror of one order's on-chain escrow contract.

    status is the last state confirmed on chain; pending_status is the
    optimistic target of a submitted transition that has not been confirmed.
    """
    __tablename__ = "escrows"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    order_id: Mapped[str] = mapped_column(String(64), ForeignKey("orders.id"), unique=True, nullable=False)
    address: Mapped[Optional[str]] = mapped_column(String(42), nullable=True, index=True)
    status: Mapped[str] = mapped_column(String(20), default=EscrowStatus.LOCKED.value, nullable=False)
    pending_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    buyer_address: Mapped[str] = mapped_column(String(42), nullable=False)
    seller_address: Mapped[str] = mapped_column(String(42), nullable=False)
    arbitrator_address: Mapped[str] = mapped_column(String(42), nullable=False)
    amount_wei: Mapped[str] = mapped_column(String(80), nullable=False)
    disputed_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    needs_review: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    review_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    order: Mapped["Order"] = relationship("Order", back_populates="escrow")
    transactions: Mapped[list["EscrowTransaction"]] = relationship(
        "EscrowTransaction", back_populates="escrow", order_by="EscrowTransaction.id", lazy="selectin"
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('Locked', 'ReleasePending', 'Disputed', 'Complete', 'Refunded')",
            name="ck_escrow_status",
        ),
    )

    @property
    def effective_status(self) -> str:
        return self.pending_status or self.status


class EscrowTransaction(Base):
    """Append-only transaction log entry for an escrow"""
    __tablename__ = "escrow_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    escrow_id: Mapped[int] = mapped_column(Integer, ForeignKey("escrows.id"), nullable=False, index=True)
    kind: Mapped[str] = mapped_column(String(30), nullable=False)
    tx_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True, index=True)
    block_number: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    from_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    target_status: Mapped[str] = mapped_column(String(20), nullable=False)
    actor_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    outcome: Mapped[str] = mapped_column(String(20), default=TxOutcome.PENDING.value, nullable=False)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    details: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    submitted_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    escrow: Mapped["Escrow"] = relationship("Escrow", back_populates="transactions")

    __table_args__ = (
        Index("ix_escrow_transactions_outcome_submitted", "outcome", "submitted_at"),
    )


# ============================================================================
# BURNS, BANK DETAILS AND PAYOUTS
# ============================================================================

class BurnRecord(Base):
    """One token burn attempt backing a payout claim"""
    __tablename__ = "burn_records"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    wallet_address: Mapped[str] = mapped_column(String(42), nullable=False)
    amount_token: Mapped[str] = mapped_column(String(80), nullable=False)
    amount_usd: Mapped[Decimal] = mapped_column(Numeric(20, 2), nullable=False)
    bank_detail_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("bank_details.id"), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default=BurnStatus.PENDING.value, nullable=False, index=True)
    tx_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True, index=True)
    block_number: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    retry_of_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    linked_payout_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    submitted_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    verified_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'submitted', 'confirmed', 'failed')", name="ck_burn_status"
        ),
        Index("ix_burn_records_status_created", "status", "created_at"),
    )


class BankDetail(Base):
    """Payee bank account; the full account number is only sent to the provider"""
    __tablename__ = "bank_details"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    holder_name: Mapped[str] = mapped_column(String(200), nullable=False)
    account_number: Mapped[str] = mapped_column(String(34), nullable=False)
    account_last4: Mapped[str] = mapped_column(String(4), nullable=False)
    routing_code: Mapped[str] = mapped_column(String(11), nullable=False)
    bank_name: Mapped[str] = mapped_column(String(100), nullable=False)
    kind: Mapped[str] = mapped_column(String(10), default=BankAccountKind.SAVINGS.value, nullable=False)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    provider_contact_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    provider_fund_account_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint("kind IN ('savings', 'current')", name="ck_bank_detail_kind"),
        Index(
            "uq_bank_details_user_default",
            "user_id",
            unique=True,
            postgresql_where=text("is_default AND is_active"),
            sqlite_where=text("is_default = 1 AND is_active = 1"),
        ),
    )


class Payout(Base):
    """Fiat payout armed by exactly one confirmed burn"""
    __tablename__ = "payouts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    burn_record_id: Mapped[str] = mapped_column(String(36), ForeignKey("burn_records.id"), unique=True, nullable=False)
    bank_detail_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("bank_details.id"), nullable=True)
    amount_usd: Mapped[Decimal] = mapped_column(Numeric(20, 2), nullable=False)
    amount_inr: Mapped[Decimal] = mapped_column(Numeric(20, 2), nullable=False)
    exchange_rate: Mapped[Decimal] = mapped_column(Numeric(20, 6), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=PayoutStatus.PENDING.value, nullable=False, index=True)
    provider_payout_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    provider_status: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    utr: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    manual_processed_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    manual_processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    admin_notes: Mapped[Optional[list]] = mapped_column(JSONType, nullable=True)
    payout_metadata: Mapped[Optional[dict]] = mapped_column("metadata", JSONType, nullable=True)
    initiated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    burn_record: Mapped["BurnRecord"] = relationship("BurnRecord", lazy="selectin")
    bank_detail: Mapped[Optional["BankDetail"]] = relationship("BankDetail", lazy="selectin")

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'sent', 'completed', 'failed', 'pending_manual', 'reversed')",
            name="ck_payout_status",
        ),
        Index("ix_payouts_status_created", "status", "created_at"),
    )


# ============================================================================
# COORDINATION
# ============================================================================

class DistributedLock(Base):
    """Database-backed distributed lock; the unique lock_name is the atomic guarantee"""
    __tablename__ = "distributed_locks"

    id = Column(Integer, primary_key=True)
    lock_name = Column(String(255), nullable=False, unique=True)
    owner_token = Column(String(64), nullable=False)
    operation_type = Column(String(50), nullable=False)
    resource_id = Column(String(255), nullable=True)
    acquired_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    lock_metadata = Column("metadata", JSONType, nullable=True)

    __table_args__ = (
        Index("ix_distributed_locks_expires_at", "expires_at"),
    )


class WebhookEventLedger(Base):
    """Every inbound provider webhook delivery, deduplicated per provider event id"""
    __tablename__ = "webhook_event_ledger"

    id = Column(Integer, primary_key=True)
    event_provider = Column(String(50), nullable=False)
    event_id = Column(String(255), nullable=False)
    event_type = Column(String(50), nullable=False)
    reference_id = Column(String(255), nullable=True, index=True)
    payload = Column(JSONType, nullable=False)
    status = Column(String(20), default="processing", nullable=False)
    processing_result = Column(Text, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("event_provider", "event_id", name="uq_webhook_event_provider_id"),
    )
