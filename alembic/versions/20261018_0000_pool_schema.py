"""Derived pool state: pools, contributions, votes, voting results, distributions, claims.

Revision ID: 001_pool_schema
Revises:
Create Date: 2026-10-18 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "001_pool_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

UINT256 = sa.Numeric(78, 0)


def upgrade() -> None:
    op.create_table(
        "pools",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("pool_address", sa.String(42), nullable=False),
        sa.Column("owner_address", sa.String(42), nullable=False),
        sa.Column("target_amount", UINT256, nullable=False),
        sa.Column("current_amount", UINT256, nullable=False, server_default="0"),
        sa.Column("contribution_window_end", sa.BigInteger(), nullable=False),
        sa.Column("voting_window_start", sa.BigInteger(), nullable=False),
        sa.Column("voting_window_end", sa.BigInteger(), nullable=False),
        sa.Column("purchase_window_start", sa.BigInteger(), nullable=False),
        sa.Column("usdc_address", sa.String(42), nullable=False),
        sa.Column("status", sa.String(50), nullable=False, server_default="ACTIVE"),
        sa.Column("domain_name", sa.String(255), nullable=True),
        sa.Column("domain_purchased", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("fraction_token_address", sa.String(42), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("pool_address", name="uq_pools_pool_address"),
    )
    op.create_index("idx_pools_owner", "pools", ["owner_address"])
    op.create_index("idx_pools_status", "pools", ["status"])

    op.create_table(
        "contributions",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("pool_address", sa.String(42), nullable=False),
        sa.Column("contributor", sa.String(42), nullable=False),
        sa.Column("amount", UINT256, nullable=False),
        sa.Column("tx_hash", sa.String(100), nullable=False),
        sa.Column("block_number", sa.BigInteger(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["pool_address"], ["pools.pool_address"], ondelete="CASCADE"),
        sa.UniqueConstraint("tx_hash", name="uq_contributions_tx_hash"),
    )
    op.create_index("idx_contributions_pool", "contributions", ["pool_address"])
    op.create_index("idx_contributions_contributor", "contributions", ["contributor"])

    op.create_table(
        "votes",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("pool_address", sa.String(42), nullable=False),
        sa.Column("voter", sa.String(42), nullable=False),
        sa.Column("domain_name", sa.String(255), nullable=False),
        sa.Column("weight", UINT256, nullable=False),
        sa.Column("tx_hash", sa.String(100), nullable=True),
        sa.Column("block_number", sa.BigInteger(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["pool_address"], ["pools.pool_address"], ondelete="CASCADE"),
        sa.UniqueConstraint("pool_address", "voter", "domain_name", name="uq_votes_pool_voter_domain"),
    )
    op.create_index("idx_votes_pool", "votes", ["pool_address"])
    op.create_index("idx_votes_voter", "votes", ["voter"])

    op.create_table(
        "voting_results",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("pool_address", sa.String(42), nullable=False),
        sa.Column("domain_name", sa.String(255), nullable=False),
        sa.Column("total_votes", UINT256, nullable=False, server_default="0"),
        sa.Column("vote_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["pool_address"], ["pools.pool_address"], ondelete="CASCADE"),
        sa.UniqueConstraint("pool_address", "domain_name", name="uq_voting_results_pool_domain"),
    )
    op.create_index("idx_voting_results_pool", "voting_results", ["pool_address"])

    op.create_table(
        "distributions",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("pool_address", sa.String(42), nullable=False),
        sa.Column("distribution_id", sa.BigInteger(), nullable=False),
        sa.Column("total_amount", UINT256, nullable=False),
        sa.Column("snapshot_timestamp", sa.BigInteger(), nullable=False),
        sa.Column("tx_hash", sa.String(100), nullable=True),
        sa.Column("block_number", sa.BigInteger(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["pool_address"], ["pools.pool_address"], ondelete="CASCADE"),
        sa.UniqueConstraint(
            "pool_address", "distribution_id", name="uq_distributions_pool_distribution"
        ),
    )
    op.create_index("idx_distributions_pool", "distributions", ["pool_address"])

    op.create_table(
        "claims",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("distribution_pk", sa.Integer(), nullable=False),
        sa.Column("user_address", sa.String(42), nullable=False),
        sa.Column("amount", UINT256, nullable=False),
        sa.Column("claimed", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("tx_hash", sa.String(100), nullable=True),
        sa.Column("block_number", sa.BigInteger(), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["distribution_pk"], ["distributions.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("distribution_pk", "user_address", name="uq_claims_distribution_user"),
    )
    op.create_index("idx_claims_user", "claims", ["user_address"])


def downgrade() -> None:
    op.drop_index("idx_claims_user", table_name="claims")
    op.drop_table("claims")

    op.drop_index("idx_distributions_pool", table_name="distributions")
    op.drop_table("distributions")

    op.drop_index("idx_voting_results_pool", table_name="voting_results")
    op.drop_table("voting_results")

    op.drop_index("idx_votes_voter", table_name="votes")
    op.drop_index("idx_votes_pool", table_name="votes")
    op.drop_table("votes")

    op.drop_index("idx_contributions_contributor", table_name="contributions")
    op.drop_index("idx_contributions_pool", table_name="contributions")
    op.drop_table("contributions")

    op.drop_index("idx_pools_status", table_name="pools")
    op.drop_index("idx_pools_owner", table_name="pools")
    op.drop_table("pools")
