"""create processed_files"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "8d24a6e9c3f0"
down_revision: Union[str, Sequence[str], None] = "5b1f0c2d7e41"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "processed_files",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("file_path", sa.String(length=512), nullable=False),
        sa.Column("station_id", sa.String(length=160), nullable=False),
        sa.Column("device_id", sa.String(length=128), nullable=False),
        sa.Column("processed_at", sa.TIMESTAMP(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("batches_created", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("batches_updated", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_rows", sa.Integer(), nullable=False, server_default="0"),
    )
    op.create_index(op.f("ix_processed_files_file_path"), "processed_files", ["file_path"], unique=True)
    op.create_index(op.f("ix_processed_files_station_id"), "processed_files", ["station_id"], unique=False)
    op.create_index(
        "ix_processed_files_station_processed", "processed_files", ["station_id", "processed_at"], unique=False
    )


def downgrade() -> None:
    op.drop_index("ix_processed_files_station_processed", table_name="processed_files")
    op.drop_index(op.f("ix_processed_files_station_id"), table_name="processed_files")
    op.drop_index(op.f("ix_processed_files_file_path"), table_name="processed_files")
    op.drop_table("processed_files")
