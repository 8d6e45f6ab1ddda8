"""initial content sync schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-18 00:00:00.000000
"""

from alembic import op
import sqlalchemy as sa


revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None

entity_kind = sa.Enum("community", "home", name="entity_kind")
sync_phase = sa.Enum("idle", "testing", "importing", "error", name="sync_phase")
knowledge_status = sa.Enum("pending", "processing", "ready", "error", name="knowledge_status")
knowledge_source_type = sa.Enum(
    "document", "url", "sitemap", "text", "wordpress_community", "wordpress_home", name="knowledge_source_type"
)


def upgrade() -> None:
    op.create_table(
        "site_connections",
        sa.Column("agent_id", sa.String(64), primary_key=True),
        sa.Column("site_url", sa.String(2048), nullable=False),
        sa.Column("verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_test_success", sa.Boolean(), nullable=True),
        sa.Column("last_test_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_table(
        "endpoint_configs",
        sa.Column("agent_id", sa.String(64), sa.ForeignKey("site_connections.agent_id", ondelete="CASCADE"), nullable=False),
        sa.Column("kind", entity_kind, nullable=False),
        sa.Column("rest_base", sa.String(255), nullable=False),
        sa.Column("sync_interval", sa.String(32), nullable=False, server_default="manual"),
        sa.Column("last_sync_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_sync_count", sa.Integer(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("agent_id", "kind", name="pk_endpoint_configs"),
    )
    op.create_table(
        "field_mappings",
        sa.Column("agent_id", sa.String(64), sa.ForeignKey("site_connections.agent_id", ondelete="CASCADE"), nullable=False),
        sa.Column("kind", entity_kind, nullable=False),
        sa.Column("mapping_json", sa.JSON(), nullable=False),
        sa.Column("confirmed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("agent_id", "kind", name="pk_field_mappings"),
    )
    op.create_table(
        "sync_states",
        sa.Column("agent_id", sa.String(64), nullable=False),
        sa.Column("kind", entity_kind, nullable=False),
        sa.Column("phase", sync_phase, nullable=False, server_default="idle"),
        sa.Column("last_error_code", sa.String(64), nullable=True),
        sa.Column("last_error_message", sa.String(512), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("agent_id", "kind", name="pk_sync_states"),
    )
    op.create_table(
        "sync_records",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("agent_id", sa.String(64), nullable=False),
        sa.Column("kind", entity_kind, nullable=False),
        sa.Column("source_record_id", sa.String(255), nullable=False),
        sa.Column("fields_json", sa.JSON(), nullable=False),
        sa.Column("content_fingerprint", sa.String(64), nullable=False),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("agent_id", "kind", "source_record_id", name="uq_sync_records_natural_key"),
    )
    op.create_index("ix_sync_records_agent_kind", "sync_records", ["agent_id", "kind"])
    op.create_table(
        "knowledge_sources",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("agent_id", sa.String(64), nullable=False),
        sa.Column("parent_id", sa.String(36), sa.ForeignKey("knowledge_sources.id", ondelete="CASCADE"), nullable=True),
        sa.Column("source_type", knowledge_source_type, nullable=False),
        sa.Column("source", sa.String(2048), nullable=False),
        sa.Column("status", knowledge_status, nullable=False, server_default="pending"),
        sa.Column("error_message", sa.String(512), nullable=True),
        sa.Column("chunk_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_content_hash", sa.String(64), nullable=True),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refresh_interval", sa.String(32), nullable=False, server_default="manual"),
        sa.Column("metadata_json", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_knowledge_sources_agent", "knowledge_sources", ["agent_id"])
    op.create_index("ix_knowledge_sources_parent", "knowledge_sources", ["parent_id"])


def downgrade() -> None:
    op.drop_index("ix_knowledge_sources_parent", table_name="knowledge_sources")
    op.drop_index("ix_knowledge_sources_agent", table_name="knowledge_sources")
    op.drop_table("knowledge_sources")
    op.drop_index("ix_sync_records_agent_kind", table_name="sync_records")
    op.drop_table("sync_records")
    op.drop_table("sync_states")
    op.drop_table("field_mappings")
    op.drop_table("endpoint_configs")
    op.drop_table("site_connections")
    bind = op.get_bind()
    for enum_type in (knowledge_source_type, knowledge_status, sync_phase, entity_kind):
        enum_type.drop(bind, checkfirst=True)
