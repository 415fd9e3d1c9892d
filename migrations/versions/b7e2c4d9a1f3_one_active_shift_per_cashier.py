"""one active shift per cashier

Revision ID: b7e2c4d9a1f3
Revises: a0b1c2d3e4f5
Create Date: 2026-10-19

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision: str = "b7e2c4d9a1f3"
down_revision: Union[str, Sequence[str], None] = "a0b1c2d3e4f5"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ACTIVE = sa.text("status <> 'FINAL_CLOSED'")


def upgrade() -> None:
    bind = op.get_bind()
    insp = inspect(bind)

    # index (idempotent)
    idx_names = {ix.get("name") for ix in insp.get_indexes("cashier_shifts")}
    if "uq_cashier_shifts_active_cashier" not in idx_names:
        op.create_index(
            "uq_cashier_shifts_active_cashier",
            "cashier_shifts",
            ["cashier_id"],
            unique=True,
            postgresql_where=ACTIVE,
            sqlite_where=ACTIVE,
        )


def downgrade() -> None:
    op.drop_index("uq_cashier_shifts_active_cashier", table_name="cashier_shifts")
