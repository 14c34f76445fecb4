"""add job availability and article tldr snapshot

Revision ID: 20261017_0003
Revises: 20261017_0002
Create Date: 2026-10-17 14:10:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261017_0003"
down_revision: Union[str, Sequence[str], None] = "20261017_0002"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column(
        "bulk_operation_jobs",
        sa.Column("available_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.add_column("articles", sa.Column("tldr_snapshot", sa.JSON(), nullable=True))


def downgrade() -> None:
    op.drop_column("articles", "tldr_snapshot")
    op.drop_column("bulk_operation_jobs", "available_at")
