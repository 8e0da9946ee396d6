"""Create the sales pipeline core tables, search columns and stage catalog.

Revision ID: 001_pipeline_core
Revises:
Create Date: 2026-10-16

Creates:
- deal_stage enum and stage_meta catalog (seeded with the default stages)
- company, contact, deal with generated weighted tsvector columns
- deal_stage_history and activity audit tables
- pg_trgm extension, GIN indexes on tsv and trigram indexes on primary fields
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import ENUM, JSONB, UUID

# revision identifiers, used by Alembic.
revision: str = "001_pipeline_core"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

STAGES = ("NEW", "QUALIFY", "PROPOSAL", "NEGOTIATE", "WON", "LOST")

# key, display_name, sort_order, probability, is_won, is_lost
DEFAULT_CATALOG = [
    ("NEW", "New", 10, 10, False, False),
    ("QUALIFY", "Qualify", 20, 25, False, False),
    ("PROPOSAL", "Proposal", 30, 50, False, False),
    ("NEGOTIATE", "Negotiate", 40, 70, False, False),
    ("WON", "Won", 90, 100, True, False),
    ("LOST", "Lost", 95, 0, False, True),
]


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    ]


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS pg_trgm")
    op.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto")

    deal_stage = ENUM(*STAGES, name="deal_stage", create_type=False)
    deal_stage.create(op.get_bind(), checkfirst=True)

    # ── stage_meta ──────────────────────────────────────────────────────

    stage_meta = op.create_table(
        "stage_meta",
        sa.Column("key", sa.String(32), primary_key=True),
        sa.Column("display_name", sa.String(64), nullable=False),
        sa.Column("sort_order", sa.SmallInteger(), nullable=False),
        sa.Column("probability", sa.SmallInteger(), nullable=False),
        sa.Column("is_won", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("is_lost", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.UniqueConstraint("sort_order", name="uq_stage_meta_sort_order"),
        sa.CheckConstraint(
            "probability BETWEEN 0 AND 100", name="ck_stage_meta_probability"
        ),
    )
    op.bulk_insert(
        stage_meta,
        [
            {
                "key": key,
                "display_name": display_name,
                "sort_order": sort_order,
                "probability": probability,
                "is_won": is_won,
                "is_lost": is_lost,
            }
            for key, display_name, sort_order, probability, is_won, is_lost in DEFAULT_CATALOG
        ],
    )

    # ── company ─────────────────────────────────────────────────────────

    op.create_table(
        "company",
        sa.Column(
            "id",
            UUID(as_uuid=True),
            primary_key=True,
            server_default=sa.text("gen_random_uuid()"),
        ),
        sa.Column("name", sa.String(256), nullable=False),
        sa.Column("website", sa.String(512), nullable=True),
        sa.Column("phone", sa.String(64), nullable=True),
        *_timestamps(),
    )
    op.execute(
        """
        ALTER TABLE company
        ADD COLUMN tsv tsvector GENERATED ALWAYS AS (
            setweight(to_tsvector('simple', coalesce(name, '')), 'A') ||
            setweight(to_tsvector('simple', coalesce(website, '')), 'D')
        ) STORED
        """
    )
    op.create_index("ix_company_name", "company", ["name"])
    op.execute("CREATE INDEX idx_company_tsv ON company USING GIN (tsv)")
    op.execute("CREATE INDEX idx_company_name_trgm ON company USING GIN (name gin_trgm_ops)")

    # ── contact ─────────────────────────────────────────────────────────

    op.create_table(
        "contact",
        sa.Column(
            "id",
            UUID(as_uuid=True),
            primary_key=True,
            server_default=sa.text("gen_random_uuid()"),
        ),
        sa.Column("email", sa.String(320), nullable=False),
        sa.Column("first_name", sa.String(128), nullable=True),
        sa.Column("last_name", sa.String(128), nullable=True),
        sa.Column("phone", sa.String(64), nullable=True),
        sa.Column(
            "company_id",
            UUID(as_uuid=True),
            sa.ForeignKey("company.id", ondelete="SET NULL"),
            nullable=True,
        ),
        *_timestamps(),
    )
    op.execute(
        """
        ALTER TABLE contact
        ADD COLUMN tsv tsvector GENERATED ALWAYS AS (
            setweight(to_tsvector('simple', coalesce(email, '')), 'A') ||
            setweight(to_tsvector('simple', coalesce(first_name, '')), 'B') ||
            setweight(to_tsvector('simple', coalesce(last_name, '')), 'B') ||
            setweight(to_tsvector('simple', coalesce(phone, '')), 'D')
        ) STORED
        """
    )
    op.create_index("ix_contact_email", "contact", ["email"])
    op.create_index("ix_contact_company_id", "contact", ["company_id"])
    op.execute("CREATE INDEX idx_contact_tsv ON contact USING GIN (tsv)")
    op.execute("CREATE INDEX idx_contact_email_trgm ON contact USING GIN (email gin_trgm_ops)")

    # ── deal ────────────────────────────────────────────────────────────

    op.create_table(
        "deal",
        sa.Column(
            "id",
            UUID(as_uuid=True),
            primary_key=True,
            server_default=sa.text("gen_random_uuid()"),
        ),
        sa.Column("title", sa.String(300), nullable=False),
        sa.Column("amount_cents", sa.BigInteger(), nullable=True),
        sa.Column("currency", sa.String(3), nullable=True),
        sa.Column(
            "stage",
            deal_stage,
            server_default=sa.text("'NEW'"),
            nullable=False,
        ),
        sa.Column("close_date", sa.Date(), nullable=True),
        sa.Column(
            "company_id",
            UUID(as_uuid=True),
            sa.ForeignKey("company.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("assigned_user_id", UUID(as_uuid=True), nullable=True),
        sa.Column("created_by", sa.String(128), nullable=True),
        sa.Column("updated_by", sa.String(128), nullable=True),
        *_timestamps(),
    )
    op.execute(
        """
        ALTER TABLE deal
        ADD COLUMN tsv tsvector GENERATED ALWAYS AS (
            setweight(to_tsvector('simple', coalesce(title, '')), 'A')
        ) STORED
        """
    )
    op.create_index("ix_deal_stage", "deal", ["stage"])
    op.create_index("ix_deal_company_id", "deal", ["company_id"])
    op.create_index("ix_deal_close_date", "deal", ["close_date"])
    op.execute("CREATE INDEX idx_deal_tsv ON deal USING GIN (tsv)")
    op.execute("CREATE INDEX idx_deal_title_trgm ON deal USING GIN (title gin_trgm_ops)")

    # ── deal_stage_history ──────────────────────────────────────────────

    op.create_table(
        "deal_stage_history",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "deal_id",
            UUID(as_uuid=True),
            sa.ForeignKey("deal.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("from_stage", deal_stage, nullable=True),
        sa.Column("to_stage", deal_stage, nullable=False),
        sa.Column("changed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("changed_by", sa.String(128), nullable=True),
    )
    op.create_index(
        "idx_deal_stage_history_deal_changed",
        "deal_stage_history",
        ["deal_id", "changed_at"],
    )
    op.create_index(
        "idx_deal_stage_history_to_stage",
        "deal_stage_history",
        ["to_stage", "changed_at"],
    )

    # ── activity ────────────────────────────────────────────────────────

    op.create_table(
        "activity",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("entity_type", sa.String(32), nullable=False),
        sa.Column("entity_id", UUID(as_uuid=True), nullable=False),
        sa.Column("kind", sa.String(32), nullable=False),
        sa.Column("subject", sa.String(256), nullable=True),
        sa.Column("body_md", sa.Text(), nullable=True),
        sa.Column(
            "meta_json",
            JSONB(),
            server_default=sa.text("'{}'::jsonb"),
            nullable=False,
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_by", sa.String(128), nullable=True),
    )
    op.create_index(
        "idx_activity_entity",
        "activity",
        ["entity_type", "entity_id", "created_at"],
    )


def downgrade() -> None:
    op.drop_table("activity")
    op.drop_table("deal_stage_history")
    op.drop_table("deal")
    op.drop_table("contact")
    op.drop_table("company")
    op.drop_table("stage_meta")
    op.execute("DROP TYPE IF EXISTS deal_stage")
