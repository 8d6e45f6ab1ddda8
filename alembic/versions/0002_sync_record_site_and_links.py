"""scope sync records by site and link homes to communities

Revision ID: 0002_sync_record_site_and_links
Revises: 0001_initial
Create Date: 2026-10-18 12:00:00.000000
"""

from alembic import op
import sqlalchemy as sa


revision = "0002_sync_record_site_and_links"
down_revision = "0001_initial"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column("sync_records", sa.Column("site_url", sa.String(2048), nullable=False, server_default=""))
    op.execute(
        """
        UPDATE sync_records
        SET site_url = site_connections.site_url
        FROM site_connections
        WHERE site_connections.agent_id = sync_records.agent_id
        """
    )
    op.add_column("sync_records", sa.Column("linked_record_id", sa.String(36), nullable=True))
    op.create_foreign_key(
        "fk_sync_records_linked_record",
        "sync_records",
        "sync_records",
        ["linked_record_id"],
        ["id"],
        ondelete="SET NULL",
    )
    op.drop_constraint("uq_sync_records_natural_key", "sync_records", type_="unique")
    op.create_unique_constraint(
        "uq_sync_records_natural_key",
        "sync_records",
        ["agent_id", "kind", "site_url", "source_record_id"],
    )


def downgrade() -> None:
    op.drop_constraint("uq_sync_records_natural_key", "sync_records", type_="unique")
    op.create_unique_constraint("uq_sync_records_natural_key", "sync_records", ["agent_id", "kind", "source_record_id"])
    op.drop_constraint("fk_sync_records_linked_record", "sync_records", type_="foreignkey")
    op.drop_column("sync_records", "linked_record_id")
    op.drop_column("sync_records", "site_url")
