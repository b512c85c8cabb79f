"""Enable the pgcrypto extension.

Revision ID: 000_enable_extensions
Revises:
Create Date: 2026-10-17

pgcrypto provides gen_random_uuid() for UUID primary keys on every ledger
table (built into PostgreSQL 13+, but the extension keeps 12 working).
"""

from collections.abc import Sequence

from alembic import op

revision: str = "000_enable_extensions"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto")


def downgrade() -> None:
    # Fails while tables still default to gen_random_uuid(); run after 001 downgrade
    op.execute("DROP EXTENSION IF EXISTS pgcrypto")
