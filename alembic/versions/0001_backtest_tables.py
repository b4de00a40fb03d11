"""Backtest tables — summary, trades, analysis history, equity curve.

Revision ID: 0001
Revises: None
Create Date: 2026-10-19
"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

position_side = sa.Enum("long", "short", name="position_side")
exit_reason = sa.Enum("stop_loss", "take_profit", "end_of_backtest", name="exit_reason")


def upgrade() -> None:
    # ── backtests ──
    op.create_table(
        "backtests",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("symbol", sa.String(), nullable=False),
        sa.Column("timeframe", sa.String(), nullable=False),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("initial_balance", sa.Float(), nullable=False),
        sa.Column("final_balance", sa.Float(), nullable=False),
        sa.Column("risk_per_trade", sa.Float(), nullable=False),
        sa.Column("total_trades", sa.Integer(), server_default="0"),
        sa.Column("winning_trades", sa.Integer(), server_default="0"),
        sa.Column("losing_trades", sa.Integer(), server_default="0"),
        sa.Column("win_rate", sa.Float(), server_default="0"),
        sa.Column("average_win", sa.Float(), server_default="0"),
        sa.Column("average_loss", sa.Float(), server_default="0"),
        # NULL when infinite (wins with no losses)
        sa.Column("profit_factor", sa.Float(), nullable=True),
        sa.Column("max_drawdown", sa.Float(), server_default="0"),
        sa.Column("max_drawdown_percentage", sa.Float(), server_default="0"),
        sa.Column("duration_seconds", sa.Float(), server_default="0"),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
        ),
    )
    op.create_index("ix_backtests_symbol", "backtests", ["symbol"])

    # ── backtest_trades ──
    op.create_table(
        "backtest_trades",
        sa.Column("id", sa.Integer(), autoincrement=True, primary_key=True),
        sa.Column(
            "backtest_id",
            sa.String(),
            sa.ForeignKey("backtests.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("symbol", sa.String(), nullable=False),
        sa.Column("side", position_side, nullable=False),
        sa.Column("entry_price", sa.Float(), nullable=False),
        sa.Column("entry_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("size", sa.Integer(), nullable=False),
        sa.Column("stop_loss", sa.Float(), nullable=False),
        sa.Column("take_profit", sa.Float(), nullable=False),
        sa.Column("exit_price", sa.Float(), nullable=False),
        sa.Column("exit_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("reason", exit_reason, nullable=False),
        sa.Column("pnl", sa.Float(), nullable=False),
        # NULL for end-of-backtest closes (percentage against a zero balance)
        sa.Column("pnl_percentage", sa.Float(), nullable=True),
    )
    op.create_index("ix_backtest_trades_backtest_id", "backtest_trades", ["backtest_id"])

    # ── backtest_analysis ──
    op.create_table(
        "backtest_analysis",
        sa.Column("id", sa.Integer(), autoincrement=True, primary_key=True),
        sa.Column(
            "backtest_id",
            sa.String(),
            sa.ForeignKey("backtests.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("action", sa.String(), nullable=True),
        sa.Column("confidence", sa.Float(), nullable=True),
        sa.Column("analysis_result", sa.JSON(), nullable=True),
        sa.Column("chart_image", sa.Text(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
    )
    op.create_index("ix_backtest_analysis_backtest_id", "backtest_analysis", ["backtest_id"])

    # ── backtest_equity_curve ──
    op.create_table(
        "backtest_equity_curve",
        sa.Column("id", sa.Integer(), autoincrement=True, primary_key=True),
        sa.Column(
            "backtest_id",
            sa.String(),
            sa.ForeignKey("backtests.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("balance", sa.Float(), nullable=False),
    )
    op.create_index(
        "ix_backtest_equity_curve_backtest_id", "backtest_equity_curve", ["backtest_id"]
    )


def downgrade() -> None:
    op.drop_table("backtest_equity_curve")
    op.drop_table("backtest_analysis")
    op.drop_table("backtest_trades")
    op.drop_table("backtests")
    exit_reason.drop(op.get_bind(), checkfirst=True)
    position_side.drop(op.get_bind(), checkfirst=True)
