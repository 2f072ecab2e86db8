"""Initial settlement ledger schema.

Revision ID: 001_ledger
Revises:
Create Date: 2026-10-19 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_ledger"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Futures contracts
    op.create_table(
        "futures_contracts",
        sa.Column("contract_id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("underlying", sa.String(10), nullable=False),
        sa.Column("settlement_price", sa.String(66), nullable=True),
        sa.Column("price_set", sa.Boolean(), nullable=False),
        sa.Column("settled", sa.Boolean(), nullable=False),
        sa.Column("total_volume", sa.String(66), nullable=True),
        sa.Column("expiry_time", sa.BigInteger(), nullable=False),
        sa.Column("creation_time", sa.BigInteger(), nullable=False),
        sa.Column("created_by", sa.String(42), nullable=False),
        sa.Column("active_decryption_request_id", sa.String(80), nullable=True),
        sa.Column("settlement_requested_at", sa.BigInteger(), nullable=True),
        sa.PrimaryKeyConstraint("contract_id"),
    )
    op.create_index(
        "idx_futures_contracts_settled_expiry", "futures_contracts", ["settled", "expiry_time"]
    )

    # Trader positions (never deleted)
    op.create_table(
        "trader_positions",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("contract_id", sa.Integer(), nullable=False),
        sa.Column("trader", sa.String(42), nullable=False),
        sa.Column("amount", sa.String(66), nullable=False),
        sa.Column("entry_price", sa.String(66), nullable=False),
        sa.Column("collateral", sa.String(66), nullable=False),
        sa.Column("nonce", sa.String(66), nullable=False),
        sa.Column("is_long", sa.Boolean(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("entry_time", sa.BigInteger(), nullable=False),
        sa.Column("closed_at", sa.BigInteger(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("contract_id", "trader", name="uq_trader_positions_contract_trader"),
    )
    op.create_index(
        "idx_trader_positions_contract_status", "trader_positions", ["contract_id", "status"]
    )
    op.create_index("idx_trader_positions_trader", "trader_positions", ["trader"])

    # Encrypted balances
    op.create_table(
        "trader_balances",
        sa.Column("trader", sa.String(42), nullable=False),
        sa.Column("balance", sa.String(66), nullable=True),
        sa.Column("updated_at", sa.BigInteger(), nullable=False),
        sa.PrimaryKeyConstraint("trader"),
    )

    # Settlement decryption requests
    op.create_table(
        "decryption_requests",
        sa.Column("request_id", sa.String(80), nullable=False),
        sa.Column("contract_id", sa.Integer(), nullable=False),
        sa.Column("requestor", sa.String(42), nullable=False),
        sa.Column("timestamp", sa.BigInteger(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("decrypted_price", sa.BigInteger(), nullable=True),
        sa.Column("is_settlement", sa.Boolean(), nullable=False),
        sa.Column("resolved_at", sa.BigInteger(), nullable=True),
        sa.PrimaryKeyConstraint("request_id"),
    )
    op.create_index(
        "idx_decryption_requests_status_ts", "decryption_requests", ["status", "timestamp"]
    )
    op.create_index("idx_decryption_requests_contract", "decryption_requests", ["contract_id"])

    # Withdrawal requests
    op.create_table(
        "withdrawal_requests",
        sa.Column("request_id", sa.String(80), nullable=False),
        sa.Column("trader", sa.String(42), nullable=False),
        sa.Column("balance", sa.String(66), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=True),
        sa.Column("timestamp", sa.BigInteger(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("resolved_at", sa.BigInteger(), nullable=True),
        sa.PrimaryKeyConstraint("request_id"),
    )
    op.create_index(
        "idx_withdrawal_requests_status_ts", "withdrawal_requests", ["status", "timestamp"]
    )
    op.create_index("idx_withdrawal_requests_trader", "withdrawal_requests", ["trader"])

    # Processed-request set
    op.create_table(
        "processed_requests",
        sa.Column("request_id", sa.String(80), nullable=False),
        sa.Column("kind", sa.String(20), nullable=False),
        sa.Column("processed_at", sa.BigInteger(), nullable=False),
        sa.PrimaryKeyConstraint("request_id"),
    )

    # Protocol key/values
    op.create_table(
        "protocol_state",
        sa.Column("key", sa.String(80), nullable=False),
        sa.Column("value", sa.String(200), nullable=False),
        sa.Column("updated_at", sa.BigInteger(), nullable=False),
        sa.PrimaryKeyConstraint("key"),
    )

    # Audit log and rate-limit counters
    op.create_table(
        "audit_log",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("actor", sa.String(42), nullable=False),
        sa.Column("action", sa.String(40), nullable=False),
        sa.Column("contract_id", sa.Integer(), nullable=True),
        sa.Column("timestamp", sa.BigInteger(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_audit_log_actor_ts", "audit_log", ["actor", "timestamp"])

    op.create_table(
        "actor_activity",
        sa.Column("actor", sa.String(42), nullable=False),
        sa.Column("last_action_at", sa.BigInteger(), nullable=False),
        sa.Column("action_count", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("actor"),
    )


def downgrade() -> None:
    op.drop_table("actor_activity")
    op.drop_index("idx_audit_log_actor_ts", table_name="audit_log")
    op.drop_table("audit_log")
    op.drop_table("protocol_state")
    op.drop_table("processed_requests")
    op.drop_index("idx_withdrawal_requests_trader", table_name="withdrawal_requests")
    op.drop_index("idx_withdrawal_requests_status_ts", table_name="withdrawal_requests")
    op.drop_table("withdrawal_requests")
    op.drop_index("idx_decryption_requests_contract", table_name="decryption_requests")
    op.drop_index("idx_decryption_requests_status_ts", table_name="decryption_requests")
    op.drop_table("decryption_requests")
    op.drop_table("trader_balances")
    op.drop_index("idx_trader_positions_trader", table_name="trader_positions")
    op.drop_index("idx_trader_positions_contract_status", table_name="trader_positions")
    op.drop_table("trader_positions")
    op.drop_index("idx_futures_contracts_settled_expiry", table_name="futures_contracts")
    op.drop_table("futures_contracts")
