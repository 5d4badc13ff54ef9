"""
Document Models

Tables:
-------
- documents: one row per uploaded file (extracted text, document-level embedding)
- document_chunks: ordered, gapless slices of a document's text, each with
  its own embedding

Documents and chunks are written by ingestion and only read by the
retrieval pipeline. When a document's text changes, its chunks are deleted
and regenerated as a set (ON DELETE CASCADE keeps orphans out).
"""

from datetime import datetime, timezone
from typing import List, Optional

from pgvector.sqlalchemy import Vector
from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from docrag.core.config import settings
from docrag.db.base import Base, TimestampMixin


class Document(Base, TimestampMixin):
    """An ingested document with its extracted text."""

    __tablename__ = "documents"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)

    owner_id: Mapped[Optional[str]] = mapped_column(String(100), index=True, nullable=True)
    tenant_id: Mapped[Optional[str]] = mapped_column(String(100), index=True, nullable=True)

    file_name: Mapped[str] = mapped_column(String(500), nullable=False)
    category: Mapped[Optional[str]] = mapped_column(String(200), index=True, nullable=True)
    visibility: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="private",
        comment="private, organization or public"
    )

    extracted_text: Mapped[str] = mapped_column(Text, nullable=False, default="")

    embedding = mapped_column(
        Vector(settings.EMBEDDING_DIMENSION),
        nullable=True,
        comment="Document-level embedding; NULL until processed"
    )

    uploaded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        index=True
    )

    chunks: Mapped[List["DocumentChunk"]] = relationship(
        "DocumentChunk",
        back_populates="document",
        cascade="all, delete-orphan",
        order_by="DocumentChunk.chunk_index",
        lazy="selectin"
    )

    def to_record(self) -> dict:
        """Plain-dict form consumed by the pipeline."""
        return {
            "document_id": self.id,
            "owner_id": self.owner_id,
            "tenant_id": self.tenant_id,
            "file_name": self.file_name,
            "category": self.category,
            "text": self.extracted_text,
            "embedding": list(self.embedding) if self.embedding is not None else None,
            "visibility": self.visibility,
            "uploaded_at": self.uploaded_at,
            "chunks": [chunk.to_record() for chunk in self.chunks],
        }

    def __repr__(self) -> str:
        return f"Document(id={self.id}, file_name={self.file_name!r})"


class DocumentChunk(Base, TimestampMixin):
    """A slice of a document's text with its own embedding."""

    __tablename__ = "document_chunks"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)

    document_id: Mapped[int] = mapped_column(
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)
    chunk_text: Mapped[str] = mapped_column(Text, nullable=False)
    start_offset: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    end_offset: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    token_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    embedding = mapped_column(Vector(settings.EMBEDDING_DIMENSION), nullable=True)

    document: Mapped["Document"] = relationship("Document", back_populates="chunks")

    __table_args__ = (
        UniqueConstraint("document_id", "chunk_index", name="uq_document_chunk_index"),
    )

    def to_record(self) -> dict:
        return {
            "chunk_id": self.id,
            "document_id": self.document_id,
            "chunk_index": self.chunk_index,
            "chunk_text": self.chunk_text,
            "start_offset": self.start_offset,
            "end_offset": self.end_offset,
            "embedding": list(self.embedding) if self.embedding is not None else None,
            "token_count": self.token_count,
        }

    def __repr__(self) -> str:
        return f"DocumentChunk(id={self.id}, document_id={self.document_id}, index={self.chunk_index})"
