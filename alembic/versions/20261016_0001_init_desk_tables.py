"""init desk tables

Revision ID: 20261016_0001_init_desk_tables
Revises: None
Create Date: 2026-10-16
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261016_0001_init_desk_tables"
down_revision = None
branch_labels = None
depends_on = None

_OPEN_STATES = "state IN ('quoted', 'locked', 'awaiting_amount', 'computing')"


def _enum(*values: str, length: int = 32) -> sa.Enum:
    # Stored as VARCHAR so new values never need ALTER TYPE.
    return sa.Enum(*values, native_enum=False, create_constraint=False, length=length)


def _ts(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


DEAL_STATE = ("quoted", "locked", "awaiting_amount", "computing", "completed", "cancelled", "rejected", "expired")
TRADE_SIDE = ("client_buys_usdt", "client_sells_usdt")
PRICING_SOURCE = ("commercial_dollar", "usdt_binance")
SPREAD_MODE = ("bps", "abs_brl", "flat")


def _deal_columns() -> list[sa.Column]:
    return [
        sa.Column("side", _enum(*TRADE_SIDE), nullable=False),
        sa.Column("base_rate", sa.Float(), nullable=False),
        sa.Column("quoted_rate", sa.Float(), nullable=False),
        sa.Column("locked_rate", sa.Float(), nullable=True),
        sa.Column("amount_brl", sa.Float(), nullable=True),
        sa.Column("amount_usdt", sa.Float(), nullable=True),
        _ts("quoted_at"),
        _ts("locked_at", nullable=True),
        _ts("ttl_expires_at"),
        _ts("reprompted_at", nullable=True),
        sa.Column("rule_id_used", sa.String(36), nullable=True),
        sa.Column("rule_name", sa.String(100), nullable=True),
        sa.Column("pricing_source", _enum(*PRICING_SOURCE), nullable=False),
        sa.Column("spread_mode", _enum(*SPREAD_MODE, length=16), nullable=False),
        sa.Column("sell_spread", sa.Float(), nullable=False),
        sa.Column("buy_spread", sa.Float(), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=False),
        _ts("created_at"),
    ]


def upgrade() -> None:
    op.create_table(
        "active_deals",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("group_jid", sa.String(128), nullable=False),
        sa.Column("client_jid", sa.String(128), nullable=False),
        sa.Column("state", _enum(*DEAL_STATE), nullable=False),
        *_deal_columns(),
        _ts("updated_at"),
    )
    op.create_index("ix_active_deals_group_jid", "active_deals", ["group_jid"])
    op.create_index("ix_active_deals_state_ttl", "active_deals", ["state", "ttl_expires_at"])
    op.create_index(
        "uq_active_deals_open_client",
        "active_deals",
        ["group_jid", "client_jid"],
        unique=True,
        sqlite_where=sa.text(_OPEN_STATES),
        postgresql_where=sa.text(_OPEN_STATES),
    )

    op.create_table(
        "deal_history",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("group_jid", sa.String(128), nullable=False),
        sa.Column("client_jid", sa.String(128), nullable=False),
        sa.Column("final_state", _enum(*DEAL_STATE), nullable=False),
        *_deal_columns(),
        sa.Column("completion_reason", sa.String(64), nullable=True),
        _ts("completed_at"),
        _ts("archived_at"),
    )
    op.create_index("ix_deal_history_group_completed", "deal_history", ["group_jid", "completed_at"])

    op.create_table(
        "group_rules",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("group_jid", sa.String(128), nullable=False),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("schedule_start_time", sa.String(5), nullable=False),
        sa.Column("schedule_end_time", sa.String(5), nullable=False),
        sa.Column("schedule_days", sa.JSON(), nullable=False),
        sa.Column("schedule_timezone", sa.String(64), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("pricing_source", _enum(*PRICING_SOURCE), nullable=False),
        sa.Column("spread_mode", _enum(*SPREAD_MODE, length=16), nullable=False),
        sa.Column("sell_spread", sa.Float(), nullable=False),
        sa.Column("buy_spread", sa.Float(), nullable=False),
        _ts("created_at"),
        _ts("updated_at"),
        sa.UniqueConstraint("group_jid", "name", name="uq_group_rules_group_name"),
    )
    op.create_index("ix_group_rules_group_jid", "group_rules", ["group_jid"])

    op.create_table(
        "group_spreads",
        sa.Column("group_jid", sa.String(128), primary_key=True),
        sa.Column("spread_mode", _enum(*SPREAD_MODE, length=16), nullable=False),
        sa.Column("sell_spread", sa.Float(), nullable=False),
        sa.Column("buy_spread", sa.Float(), nullable=False),
        sa.Column("quote_ttl_seconds", sa.Integer(), nullable=False),
        sa.Column("default_side", _enum(*TRADE_SIDE), nullable=False),
        sa.Column("default_currency", sa.String(8), nullable=False),
        sa.Column("language", sa.String(8), nullable=False),
        sa.Column("deal_flow_mode", _enum("classic", "simple", length=16), nullable=False),
        sa.Column("operator_jid", sa.String(128), nullable=True),
        sa.Column("amount_timeout_seconds", sa.Integer(), nullable=False),
        sa.Column("group_language", _enum("pt", "en", length=8), nullable=False),
        _ts("created_at"),
        _ts("updated_at"),
    )

    op.create_table(
        "outbound_messages",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("group_jid", sa.String(128), nullable=False),
        sa.Column("content_text", sa.Text(), nullable=False),
        sa.Column("mentions", sa.JSON(), nullable=False),
        sa.Column("status", _enum("queued", "sent", "failed", length=16), nullable=False),
        _ts("created_at"),
        _ts("sent_at", nullable=True),
    )
    op.create_index("ix_outbound_messages_group_jid", "outbound_messages", ["group_jid"])


def downgrade() -> None:
    op.drop_index("ix_outbound_messages_group_jid", table_name="outbound_messages")
    op.drop_table("outbound_messages")
    op.drop_table("group_spreads")
    op.drop_index("ix_group_rules_group_jid", table_name="group_rules")
    op.drop_table("group_rules")
    op.drop_index("ix_deal_history_group_completed", table_name="deal_history")
    op.drop_table("deal_history")
    op.drop_index("uq_active_deals_open_client", table_name="active_deals")
    op.drop_index("ix_active_deals_state_ttl", table_name="active_deals")
    op.drop_index("ix_active_deals_group_jid", table_name="active_deals")
    op.drop_table("active_deals")
