"""SQLAlchemy models for vaults and their members."""

from datetime import datetime

from sqlalchemy import JSON, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from custody_engine.common.models import Base, TimestampMixin, generate_uuid, utcnow
from custody_engine.identifiers.caip10 import derive_canonical

MEMBER_ROLES = ("owner", "guardian", "requester", "viewer", "approver")


class VaultModel(Base, TimestampMixin):
    __tablename__ = "vaults"
    __table_args__ = (
        UniqueConstraint("address_key", "chain_id", name="uq_vault_address_chain"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    address: Mapped[str] = mapped_column(String(42), nullable=False)
    address_key: Mapped[str] = mapped_column(String(42), nullable=False, index=True)
    chain_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    uuid: Mapped[str] = mapped_column(String(36), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    salt: Mapped[str | None] = mapped_column(String(66), nullable=True)
    factory_address: Mapped[str | None] = mapped_column(String(42), nullable=True)
    policy_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("policies.id", ondelete="SET NULL", use_alter=True, name="fk_vault_policy"),
        nullable=True,
    )
    metadata_: Mapped[dict] = mapped_column("metadata", JSON, default=dict)

    @property
    def caip10(self) -> str:
        return derive_canonical(self.address, self.chain_id)


class MemberModel(Base):
    __tablename__ = "members"
    __table_args__ = (
        UniqueConstraint("vault_id", "address_key", name="uq_member_vault_address"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    vault_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("vaults.id", ondelete="CASCADE"), nullable=False, index=True
    )
    address: Mapped[str] = mapped_column(String(42), nullable=False)
    address_key: Mapped[str] = mapped_column(String(42), nullable=False, index=True)
    # Copied from the vault so the member can render its own identifier.
    chain_id: Mapped[int] = mapped_column(Integer, nullable=False)
    role: Mapped[str] = mapped_column(String(20), nullable=False)
    weight: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    added_by: Mapped[str | None] = mapped_column(String(42), nullable=True)
    added_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    last_activity_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    metadata_: Mapped[dict] = mapped_column("metadata", JSON, default=dict)

    @property
    def caip10(self) -> str:
        return derive_canonical(self.address, self.chain_id)
