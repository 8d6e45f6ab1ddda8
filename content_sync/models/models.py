import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Enum, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from content_sync.db.session import Base

ENTITY_KIND = ("community", "home")
SYNC_PHASE = ("idle", "testing", "importing", "error")
KNOWLEDGE_STATUS = ("pending", "processing", "ready", "error")
KNOWLEDGE_SOURCE_TYPE = ("document", "url", "sitemap", "text", "wordpress_community", "wordpress_home")


def _new_id() -> str:
    return str(uuid.uuid4())


class SiteConnections(Base):
    __tablename__ = "site_connections"
    agent_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    site_url: Mapped[str] = mapped_column(String(2048))
    verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_test_success: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    last_test_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class EndpointConfigs(Base):
    __tablename__ = "endpoint_configs"
    agent_id: Mapped[str] = mapped_column(String(64), ForeignKey("site_connections.agent_id", ondelete="CASCADE"), primary_key=True)
    kind: Mapped[str] = mapped_column(Enum(*ENTITY_KIND, name="entity_kind"), primary_key=True)
    rest_base: Mapped[str] = mapped_column(String(255))
    sync_interval: Mapped[str] = mapped_column(String(32), default="manual")
    last_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_sync_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class FieldMappings(Base):
    __tablename__ = "field_mappings"
    agent_id: Mapped[str] = mapped_column(String(64), ForeignKey("site_connections.agent_id", ondelete="CASCADE"), primary_key=True)
    kind: Mapped[str] = mapped_column(Enum(*ENTITY_KIND, name="entity_kind"), primary_key=True)
    mapping_json: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    confirmed: Mapped[bool] = mapped_column(Boolean, default=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class SyncStates(Base):
    __tablename__ = "sync_states"
    agent_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    kind: Mapped[str] = mapped_column(Enum(*ENTITY_KIND, name="entity_kind"), primary_key=True)
    phase: Mapped[str] = mapped_column(Enum(*SYNC_PHASE, name="sync_phase"), default="idle")
    last_error_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    last_error_message: Mapped[str | None] = mapped_column(String(512), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class SyncRecords(Base):
    __tablename__ = "sync_records"
    __table_args__ = (
        UniqueConstraint("agent_id", "kind", "site_url", "source_record_id", name="uq_sync_records_natural_key"),
        Index("ix_sync_records_agent_kind", "agent_id", "kind"),
    )
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    agent_id: Mapped[str] = mapped_column(String(64))
    kind: Mapped[str] = mapped_column(Enum(*ENTITY_KIND, name="entity_kind"))
    site_url: Mapped[str] = mapped_column(String(2048))
    source_record_id: Mapped[str] = mapped_column(String(255))
    linked_record_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("sync_records.id", ondelete="SET NULL"), nullable=True)
    fields_json: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    content_fingerprint: Mapped[str] = mapped_column(String(64))
    last_synced_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class KnowledgeSources(Base):
    __tablename__ = "knowledge_sources"
    __table_args__ = (
        Index("ix_knowledge_sources_agent", "agent_id"),
        Index("ix_knowledge_sources_parent", "parent_id"),
    )
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    agent_id: Mapped[str] = mapped_column(String(64))
    parent_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("knowledge_sources.id", ondelete="CASCADE"), nullable=True)
    source_type: Mapped[str] = mapped_column(Enum(*KNOWLEDGE_SOURCE_TYPE, name="knowledge_source_type"))
    source: Mapped[str] = mapped_column(String(2048))
    status: Mapped[str] = mapped_column(Enum(*KNOWLEDGE_STATUS, name="knowledge_status"), default="pending")
    error_message: Mapped[str | None] = mapped_column(String(512), nullable=True)
    chunk_count: Mapped[int] = mapped_column(Integer, default=0)
    last_content_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    refresh_interval: Mapped[str] = mapped_column(String(32), default="manual")
    metadata_json: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
