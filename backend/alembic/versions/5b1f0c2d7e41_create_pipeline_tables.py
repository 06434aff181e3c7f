"""create devices, readings and derivatives"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "5b1f0c2d7e41"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "devices",
        sa.Column("device_id", sa.String(length=128), primary_key=True),
        sa.Column("owner_id", sa.String(length=128), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="active"),
        sa.Column("sensor_types", postgresql.JSONB, nullable=False),
        sa.Column("location", postgresql.JSONB, nullable=True),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
    )
    op.create_index(op.f("ix_devices_owner_id"), "devices", ["owner_id"], unique=False)

    op.create_table(
        "readings",
        sa.Column("reading_id", sa.String(length=160), primary_key=True),
        sa.Column("device_id", sa.String(length=128), nullable=False),
        sa.Column("owner_id", sa.String(length=128), nullable=False),
        sa.Column("window_start", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("window_end", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("hour_index", sa.Integer(), nullable=False),
        sa.Column("sensor_data", postgresql.JSONB, nullable=False),
        sa.Column("location", postgresql.JSONB, nullable=True),
        sa.Column("ingestion_count", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("last_ingestion", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("data_points_count", postgresql.JSONB, nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="PENDING"),
        sa.Column("picked_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("picked_by", sa.String(length=64), nullable=True),
        sa.Column("merkle_root", sa.String(length=64), nullable=True),
        sa.Column("content_hash", sa.String(length=64), nullable=True),
        sa.Column("storage_uri", sa.String(length=255), nullable=True),
        sa.Column("storage_id", sa.String(length=128), nullable=True),
        sa.Column("verified_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("ai_started_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=True, server_default="0"),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("failed_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("derivative_id", sa.String(length=64), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
    )
    op.create_index(op.f("ix_readings_device_id"), "readings", ["device_id"], unique=False)
    op.create_index(op.f("ix_readings_owner_id"), "readings", ["owner_id"], unique=False)
    op.create_index(op.f("ix_readings_window_start"), "readings", ["window_start"], unique=False)
    op.create_index(op.f("ix_readings_status"), "readings", ["status"], unique=False)
    op.create_index(op.f("ix_readings_derivative_id"), "readings", ["derivative_id"], unique=False)
    op.create_index("ix_readings_status_window_end", "readings", ["status", "window_end"], unique=False)
    op.create_index("ix_readings_device_status", "readings", ["device_id", "status"], unique=False)
    op.create_index("ix_readings_owner_status", "readings", ["owner_id", "status"], unique=False)

    op.create_table(
        "derivatives",
        sa.Column("derivative_id", sa.String(length=64), primary_key=True),
        sa.Column("type", sa.String(length=16), nullable=False),
        sa.Column("period_start", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("period_end", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("location", sa.String(length=160), nullable=True),
        sa.Column("parent_data_ids", postgresql.JSONB, nullable=False),
        sa.Column("child_derivative_ids", postgresql.JSONB, nullable=True),
        sa.Column("meta_parent_id", sa.String(length=64), nullable=True),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("summary", postgresql.JSONB, nullable=True),
        sa.Column("content_hash", sa.String(length=64), nullable=True),
        sa.Column("merkle_root", sa.String(length=64), nullable=True),
        sa.Column("storage_uri", sa.String(length=255), nullable=True),
        sa.Column("storage_id", sa.String(length=128), nullable=True),
        sa.Column("processed_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("llm_metadata", postgresql.JSONB, nullable=True),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
    )
    op.create_index(op.f("ix_derivatives_type"), "derivatives", ["type"], unique=False)
    op.create_index(op.f("ix_derivatives_period_start"), "derivatives", ["period_start"], unique=False)
    op.create_index(op.f("ix_derivatives_meta_parent_id"), "derivatives", ["meta_parent_id"], unique=False)


def downgrade() -> None:
    op.drop_index(op.f("ix_derivatives_meta_parent_id"), table_name="derivatives")
    op.drop_index(op.f("ix_derivatives_period_start"), table_name="derivatives")
    op.drop_index(op.f("ix_derivatives_type"), table_name="derivatives")
    op.drop_table("derivatives")

    op.drop_index("ix_readings_owner_status", table_name="readings")
    op.drop_index("ix_readings_device_status", table_name="readings")
    op.drop_index("ix_readings_status_window_end", table_name="readings")
    op.drop_index(op.f("ix_readings_derivative_id"), table_name="readings")
    op.drop_index(op.f("ix_readings_status"), table_name="readings")
    op.drop_index(op.f("ix_readings_window_start"), table_name="readings")
    op.drop_index(op.f("ix_readings_owner_id"), table_name="readings")
    op.drop_index(op.f("ix_readings_device_id"), table_name="readings")
    op.drop_table("readings")

    op.drop_index(op.f("ix_devices_owner_id"), table_name="devices")
    op.drop_table("devices")
