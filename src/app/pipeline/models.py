"""CRM persistence models for the sales pipeline.

Six SQLAlchemy models:
- StageMetaModel: Configurable stage catalog (ordering, probability, won/lost flags)
- CompanyModel: Organizations owning deals
- ContactModel: People, optionally linked to a company
- DealModel: Sales opportunities moving through the pipeline
- DealStageHistoryModel: Append-only audit of stage changes
- ActivityModel: Generic timeline entries (stage changes today)

Company, contact and deal carry a generated ``tsv`` column with weighted
``simple`` tokens for the token-ranked search strategy. Trigram indexes on the
primary text columns back the fuzzy strategy (see the Alembic migration).
"""

from __future__ import annotations

import uuid
from datetime import date, datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    Computed,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    SmallInteger,
    String,
    Text,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB, TSVECTOR, UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.app.core.database import Base
from src.app.pipeline.stages import StoredStage

deal_stage_enum = SAEnum(
    StoredStage,
    name="deal_stage",
    values_callable=lambda members: [m.value for m in members],
)


class StageMetaModel(Base):
    """Per-stage metadata. sort_order is unique and defines board order."""

    __tablename__ = "stage_meta"

    key: Mapped[str] = mapped_column(String(32), primary_key=True)
    display_name: Mapped[str] = mapped_column(String(64), nullable=False)
    sort_order: Mapped[int] = mapped_column(SmallInteger, nullable=False, unique=True)
    probability: Mapped[int] = mapped_column(SmallInteger, nullable=False)
    is_won: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=text("false")
    )
    is_lost: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=text("false")
    )


class CompanyModel(Base):
    """Organization record; name is the primary search field."""

    __tablename__ = "company"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    name: Mapped[str] = mapped_column(String(256), nullable=False, index=True)
    website: Mapped[str | None] = mapped_column(String(512), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    tsv: Mapped[str | None] = mapped_column(
        TSVECTOR,
        Computed(
            "setweight(to_tsvector('simple', coalesce(name, '')), 'A') || "
            "setweight(to_tsvector('simple', coalesce(website, '')), 'D')",
            persisted=True,
        ),
        deferred=True,
    )


class ContactModel(Base):
    """Person record; email is the primary search field."""

    __tablename__ = "contact"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    email: Mapped[str] = mapped_column(String(320), nullable=False, index=True)
    first_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    company_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("company.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    tsv: Mapped[str | None] = mapped_column(
        TSVECTOR,
        Computed(
            "setweight(to_tsvector('simple', coalesce(email, '')), 'A') || "
            "setweight(to_tsvector('simple', coalesce(first_name, '')), 'B') || "
            "setweight(to_tsvector('simple', coalesce(last_name, '')), 'B') || "
            "setweight(to_tsvector('simple', coalesce(phone, '')), 'D')",
            persisted=True,
        ),
        deferred=True,
    )


class DealModel(Base):
    """Sales opportunity. ``stage`` is only changed by StageTransitionService."""

    __tablename__ = "deal"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    title: Mapped[str] = mapped_column(String(300), nullable=False)
    amount_cents: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    currency: Mapped[str | None] = mapped_column(String(3), nullable=True)
    stage: Mapped[StoredStage] = mapped_column(
        deal_stage_enum,
        nullable=False,
        default=StoredStage.NEW,
        server_default=text("'NEW'"),
        index=True,
    )
    close_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    company_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("company.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    assigned_user_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), nullable=True
    )
    created_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    updated_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    tsv: Mapped[str | None] = mapped_column(
        TSVECTOR,
        Computed(
            "setweight(to_tsvector('simple', coalesce(title, '')), 'A')",
            persisted=True,
        ),
        deferred=True,
    )


class DealStageHistoryModel(Base):
    """Append-only stage change record. Never written for no-op moves."""

    __tablename__ = "deal_stage_history"
    __table_args__ = (
        Index("idx_deal_stage_history_deal_changed", "deal_id", "changed_at"),
        Index("idx_deal_stage_history_to_stage", "to_stage", "changed_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    deal_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("deal.id", ondelete="CASCADE"),
        nullable=False,
    )
    from_stage: Mapped[StoredStage | None] = mapped_column(
        deal_stage_enum, nullable=True
    )
    to_stage: Mapped[StoredStage] = mapped_column(deal_stage_enum, nullable=False)
    changed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    changed_by: Mapped[str | None] = mapped_column(String(128), nullable=True)


class ActivityModel(Base):
    """Timeline entry scoped to an entity (entity_type + entity_id)."""

    __tablename__ = "activity"
    __table_args__ = (
        Index("idx_activity_entity", "entity_type", "entity_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    entity_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False
    )
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    subject: Mapped[str | None] = mapped_column(String(256), nullable=True)
    body_md: Mapped[str | None] = mapped_column(Text, nullable=True)
    meta_json: Mapped[dict] = mapped_column(
        JSONB, default=dict, server_default=text("'{}'::jsonb")
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    created_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
