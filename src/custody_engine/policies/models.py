"""SQLAlchemy model for vault policies."""

from typing import Any

from sqlalchemy import JSON, Boolean, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from custody_engine.common.models import Base, TimestampMixin, generate_uuid, utcnow

POLICY_TYPES = ("payment", "collection")


class PolicyModel(Base, TimestampMixin):
    __tablename__ = "policies"
    __table_args__ = (
        Index("policy_vault_type_idx", "vault_id", "type"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    vault_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("vaults.id", ondelete="CASCADE"), nullable=False, index=True
    )
    type: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)

    # Payment rules
    threshold: Mapped[int | None] = mapped_column(Integer, nullable=True)
    timelock: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_amount: Mapped[str | None] = mapped_column(String(78), nullable=True)
    roles_root: Mapped[str | None] = mapped_column(String(66), nullable=True)
    owners_root: Mapped[str | None] = mapped_column(String(66), nullable=True)
    guardian_addresses: Mapped[list] = mapped_column(JSON, default=list)
    owner_addresses: Mapped[list] = mapped_column(JSON, default=list)

    # Collection rules
    collection_config: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    pending_changes: Mapped[list] = mapped_column(JSON, default=list)
    metadata_: Mapped[dict] = mapped_column("metadata", JSON, default=dict)

    def snapshot(self) -> dict[str, Any]:
        """The rules an escrow is evaluated against for its whole life."""
        return {
            "policy_id": self.id,
            "type": self.type,
            "threshold": self.threshold,
            "timelock": self.timelock,
            "max_amount": self.max_amount,
            "roles_root": self.roles_root,
            "owners_root": self.owners_root,
            "guardian_addresses": list(self.guardian_addresses or []),
            "owner_addresses": list(self.owner_addresses or []),
            "collection_config": dict(self.collection_config or {}),
            "captured_at": utcnow().isoformat(),
        }
