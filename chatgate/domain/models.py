from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from pgvector.sqlalchemy import Vector

from chatgate.core.config import EMBED_DIM


class Base(DeclarativeBase):
    pass


class Workspace(Base):
    __tablename__ = "workspaces"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String)
    slug: Mapped[str] = mapped_column(String, unique=True, index=True)
    # Bot customization; nullable means the widget default applies.
    chatbot_name: Mapped[str | None] = mapped_column(String, nullable=True)
    welcome_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    accent_color: Mapped[str | None] = mapped_column(String, nullable=True)
    logo_url: Mapped[str | None] = mapped_column(String, nullable=True)
    theme: Mapped[str | None] = mapped_column(String, nullable=True)
    custom_css: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Profile(Base):
    __tablename__ = "profiles"
    __table_args__ = (
        CheckConstraint(
            "subscription_status IN ('none', 'trial', 'active', 'expired')",
            name="ck_profiles_subscription_status",
        ),
        # No free tier: the tier column only admits paid tiers.
        CheckConstraint(
            "subscription_tier IN ('basic', 'pro', 'ultra')",
            name="ck_profiles_subscription_tier",
        ),
        CheckConstraint("role IN ('owner', 'admin', 'member')", name="ck_profiles_role"),
    )

    # Keyed by the identity provider subject so auth and profile stay 1:1.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    email: Mapped[str] = mapped_column(String, default="")
    # Nullable only between identity creation and onboarding.
    workspace_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("workspaces.id"), nullable=True, index=True
    )
    role: Mapped[str] = mapped_column(String, default="owner")
    subscription_status: Mapped[str] = mapped_column(String, default="none")
    subscription_tier: Mapped[str] = mapped_column(String, default="basic")
    trial_ends_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    subscription_ends_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    # Monotone: flipped to true on trial activation and never reset.
    has_used_trial: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    payment_reference: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class Document(Base):
    __tablename__ = "documents"
    __table_args__ = (
        Index("ix_documents_workspace_created", "workspace_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    workspace_id: Mapped[str] = mapped_column(String, ForeignKey("workspaces.id"), index=True)
    owner_id: Mapped[str] = mapped_column(String, index=True)
    filename: Mapped[str] = mapped_column(String)
    content: Mapped[str] = mapped_column(Text)
    # PENDING -> INDEXED | FAILED; edits reset to PENDING.
    status: Mapped[str] = mapped_column(String, index=True, default="PENDING")
    word_count: Mapped[int] = mapped_column(Integer, default=0)
    # Short, actionable description when indexing fails.
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    indexed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class Chunk(Base):
    __tablename__ = "chunks"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    document_id: Mapped[str] = mapped_column(
        String, ForeignKey("documents.id", ondelete="CASCADE"), index=True
    )
    # Copied from the parent document at creation; regenerate chunks instead of patching.
    workspace_id: Mapped[str] = mapped_column(String, index=True)
    owner_id: Mapped[str] = mapped_column(String)
    chunk_index: Mapped[int] = mapped_column(Integer)
    text: Mapped[str] = mapped_column(Text)
    # pgvector on Postgres; JSON arrays keep sqlite-backed dev/test databases usable.
    embedding: Mapped[list[float] | None] = mapped_column(
        Vector(EMBED_DIM).with_variant(JSON(), "sqlite"), nullable=True
    )
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class UsageCounter(Base):
    __tablename__ = "usage_counters"

    # One row per workspace and calendar month (YYYY-MM).
    workspace_id: Mapped[str] = mapped_column(String, primary_key=True)
    month: Mapped[str] = mapped_column(String(7), primary_key=True)
    monthly_conversations: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    monthly_uploads: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_stored_words: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (
        Index("ix_orders_status_created", "status", "created_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    account_id: Mapped[str] = mapped_column(String, ForeignKey("profiles.id"), index=True)
    plan_id: Mapped[str] = mapped_column(String)
    billing_period: Mapped[str] = mapped_column(String, default="monthly")
    # Gateway payment id, set once the payment is captured.
    payment_reference: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, default="pending")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
