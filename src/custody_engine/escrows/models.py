"""SQLAlchemy models for escrows, collection participants and approvals."""

from datetime import datetime

from sqlalchemy import (
    JSON,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from custody_engine.common.models import Base, TimestampMixin, generate_uuid, utcnow
from custody_engine.identifiers.caip10 import derive_canonical


class EscrowModel(Base, TimestampMixin):
    __tablename__ = "escrows"
    __table_args__ = (
        Index("escrow_vault_status_idx", "vault_id", "status"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    vault_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("vaults.id", ondelete="CASCADE"), nullable=False, index=True
    )
    policy_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("policies.id"), nullable=False, index=True
    )
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    # None means the chain's native asset.
    token: Mapped[str | None] = mapped_column(String(42), nullable=True)
    total_amount: Mapped[str] = mapped_column(String(78), nullable=False)
    deadline: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="draft", index=True)

    # Payment
    requester: Mapped[str | None] = mapped_column(String(42), nullable=True)
    recipient: Mapped[str | None] = mapped_column(String(42), nullable=True)
    target: Mapped[str | None] = mapped_column(String(42), nullable=True)
    payload: Mapped[str | None] = mapped_column(Text, nullable=True)
    scheduled_release_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Collection
    collected_amount: Mapped[str] = mapped_column(String(78), nullable=False, default="0")

    # Approval state
    policy_snapshot: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    current_approvals: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    executable_after: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # On-chain tracking
    on_chain_id: Mapped[str | None] = mapped_column(String(66), nullable=True)
    tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True, index=True)
    user_op_hash: Mapped[str | None] = mapped_column(String(66), nullable=True, index=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancel_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    expired_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    metadata_: Mapped[dict] = mapped_column("metadata", JSON, default=dict)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    participants: Mapped[list["ParticipantModel"]] = relationship(
        back_populates="escrow",
        lazy="selectin",
        order_by="ParticipantModel.position",
        cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": version}


class ParticipantModel(Base):
    __tablename__ = "escrow_participants"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    escrow_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("escrows.id", ondelete="CASCADE"), nullable=False, index=True
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    address: Mapped[str | None] = mapped_column(String(42), nullable=True)
    address_key: Mapped[str | None] = mapped_column(String(42), nullable=True, index=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    allocated_amount: Mapped[str] = mapped_column(String(78), nullable=False)
    paid_amount: Mapped[str] = mapped_column(String(78), nullable=False, default="0")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_payment_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)

    escrow: Mapped["EscrowModel"] = relationship(back_populates="participants")


class ApprovalModel(Base):
    __tablename__ = "approvals"
    __table_args__ = (
        UniqueConstraint("escrow_id", "approver_key", name="uq_approval_escrow_approver"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    escrow_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("escrows.id", ondelete="CASCADE"), nullable=False, index=True
    )
    member_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("members.id", ondelete="SET NULL"), nullable=True
    )
    approver: Mapped[str] = mapped_column(String(42), nullable=False)
    approver_key: Mapped[str] = mapped_column(String(42), nullable=False)
    chain_id: Mapped[int] = mapped_column(Integer, nullable=False)
    approved_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    signature: Mapped[str | None] = mapped_column(Text, nullable=True)
    merkle_proof: Mapped[list | None] = mapped_column(JSON, nullable=True)

    @property
    def caip10(self) -> str:
        return derive_canonical(self.approver, self.chain_id)
