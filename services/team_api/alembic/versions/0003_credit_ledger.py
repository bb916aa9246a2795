"""team credit pool, member allocations and payments

Revision ID: 0003_credit_ledger
Revises: 0002_invitations
Create Date: 2026-10-18 00:00:02

"""
from alembic import op
import sqlalchemy as sa

revision = "0003_credit_ledger"
down_revision = "0002_invitations"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "team_credits",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "team_id",
            sa.Integer(),
            sa.ForeignKey("teams.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("total_credits", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("used_credits", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.CheckConstraint("total_credits >= 0", name="ck_team_credits_total_non_negative"),
        sa.CheckConstraint("used_credits >= 0", name="ck_team_credits_used_non_negative"),
    )

    op.create_table(
        "member_credits",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "team_id",
            sa.Integer(),
            sa.ForeignKey("teams.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "user_id",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "allocated_credits", sa.Integer(), server_default=sa.text("0"), nullable=False
        ),
        sa.Column("used_credits", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.UniqueConstraint("team_id", "user_id", name="uq_member_credits_team_user"),
        sa.CheckConstraint("used_credits >= 0", name="ck_member_credits_used_non_negative"),
        sa.CheckConstraint(
            "used_credits <= allocated_credits",
            name="ck_member_credits_used_within_allocation",
        ),
    )
    op.create_index("ix_member_credits_team_id", "member_credits", ["team_id"])
    op.create_index("ix_member_credits_user_id", "member_credits", ["user_id"])

    op.create_table(
        "payments",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "team_id",
            sa.Integer(),
            sa.ForeignKey("teams.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "user_id",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "external_transaction_id", sa.String(length=255), nullable=False, unique=True
        ),
        sa.Column("amount", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("currency", sa.String(length=8), server_default=sa.text("'usd'"), nullable=True),
        sa.Column("credits_granted", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_payments_team_id", "payments", ["team_id"])


def downgrade() -> None:
    op.drop_index("ix_payments_team_id", table_name="payments")
    op.drop_table("payments")
    op.drop_index("ix_member_credits_user_id", table_name="member_credits")
    op.drop_index("ix_member_credits_team_id", table_name="member_credits")
    op.drop_table("member_credits")
    op.drop_table("team_credits")
