"""Items, their append-only revisions and lifecycle history."""

from __future__ import annotations

import enum

from sqlalchemy import JSON, Column, ForeignKey, Index, Integer, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from ..db.session import Base


class ItemStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    ARCHIVED = "ARCHIVED"


class HistoryAction(str, enum.Enum):
    CREATED = "CREATED"
    UPDATED = "UPDATED"
    ARCHIVED = "ARCHIVED"


class Item(Base):
    """Current state of an item.

    ``current_revision`` always points at the newest row in
    ``item_revisions``; edits never rewrite older revisions.
    """

    __tablename__ = "items"
    __table_args__ = (Index("ix_items_status_id", "status", "id"),)

    id = Column(Integer, primary_key=True, index=True)
    external_key = Column(Text, nullable=False, unique=True)
    title = Column(Text, nullable=False)
    body = Column(Text, nullable=True)
    attributes = Column(JSON, nullable=False, default=dict)
    status = Column(Text, nullable=False, default=ItemStatus.ACTIVE.value)
    current_revision = Column(Integer, nullable=False, default=1)
    created_at = Column(Text, nullable=False)
    updated_at = Column(Text, nullable=False)
    archived_at = Column(Text, nullable=True)
    archived_by = Column(Text, nullable=True)

    revisions = relationship(
        "ItemRevision",
        back_populates="item",
        order_by="ItemRevision.revision",
        lazy="select",
    )

    @property
    def is_archived(self) -> bool:
        return self.status == ItemStatus.ARCHIVED.value


class ItemRevision(Base):
    __tablename__ = "item_revisions"
    __table_args__ = (UniqueConstraint("item_id", "revision", name="ux_item_revisions_item_revision"),)

    id = Column(Integer, primary_key=True, index=True)
    item_id = Column(Integer, ForeignKey("items.id"), nullable=False)
    revision = Column(Integer, nullable=False)
    title = Column(Text, nullable=False)
    body = Column(Text, nullable=True)
    attributes = Column(JSON, nullable=False, default=dict)
    author = Column(Text, nullable=True)
    created_at = Column(Text, nullable=False)

    item = relationship("Item", back_populates="revisions")


class ItemHistory(Base):
    __tablename__ = "item_history"
    __table_args__ = (Index("ix_item_history_item_created", "item_id", "created_at"),)

    id = Column(Integer, primary_key=True, index=True)
    item_id = Column(Integer, ForeignKey("items.id"), nullable=False)
    action = Column(Text, nullable=False)
    from_status = Column(Text, nullable=True)
    to_status = Column(Text, nullable=True)
    actor = Column(Text, nullable=True)
    on_behalf_of = Column(Text, nullable=True)
    reason = Column(Text, nullable=True)
    created_at = Column(Text, nullable=False)
