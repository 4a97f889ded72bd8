"""seed default follow-up sequences

Revision ID: 202610170002
Revises: 202610170001
Create Date: 2026-10-17 00:02:00
"""

from collections.abc import Sequence
from datetime import datetime, timezone
import uuid

from alembic import op
import sqlalchemy as sa

from leadops.sequences.seed import DEFAULT_SEQUENCES


revision: str = "202610170002"
down_revision: str | None = "202610170001"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


sequence_table = sa.table(
    "follow_up_sequence",
    sa.column("id", sa.Uuid()),
    sa.column("name", sa.Text()),
    sa.column("funnel", sa.String()),
    sa.column("active", sa.Boolean()),
    sa.column("created_at", sa.DateTime(timezone=True)),
)

step_table = sa.table(
    "follow_up_step",
    sa.column("id", sa.Uuid()),
    sa.column("sequence_id", sa.Uuid()),
    sa.column("step_order", sa.Integer()),
    sa.column("delay_minutes", sa.Integer()),
    sa.column("channel", sa.String()),
    sa.column("template", sa.Text()),
)


def upgrade() -> None:
    now = datetime.now(timezone.utc)
    op.bulk_insert(
        sequence_table,
        [
            {
                "id": definition["id"],
                "name": definition["name"],
                "funnel": definition["funnel"],
                "active": True,
                "created_at": now,
            }
            for definition in DEFAULT_SEQUENCES
        ],
    )
    op.bulk_insert(
        step_table,
        [
            {
                "id": uuid.uuid4(),
                "sequence_id": definition["id"],
                "step_order": order,
                "delay_minutes": delay_minutes,
                "channel": "whatsapp",
                "template": template,
            }
            for definition in DEFAULT_SEQUENCES
            for order, (delay_minutes, template) in enumerate(definition["steps"], start=1)
        ],
    )


def downgrade() -> None:
    ids = [definition["id"] for definition in DEFAULT_SEQUENCES]
    op.execute(step_table.delete().where(step_table.c.sequence_id.in_(ids)))
    op.execute(sequence_table.delete().where(sequence_table.c.id.in_(ids)))
