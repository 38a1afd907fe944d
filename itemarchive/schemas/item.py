from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ItemCreate(BaseModel):
    external_key: str = Field(min_length=1)
    title: str = Field(min_length=1)
    body: Optional[str] = None
    attributes: dict[str, Any] = Field(default_factory=dict)
    embedding: Optional[list[float]] = None


class ItemUpdate(BaseModel):
    title: Optional[str] = None
    body: Optional[str] = None
    attributes: Optional[dict[str, Any]] = None


class ItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    external_key: str
    title: str
    body: Optional[str]
    attributes: dict[str, Any] = Field(default_factory=dict)
    status: str
    current_revision: int
    created_at: str
    updated_at: str
    archived_at: Optional[str] = None
    archived_by: Optional[str] = None


class ItemRefOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    external_key: str
    status: str
    current_revision: int
    updated_at: str


class RevisionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    revision: int
    title: str
    body: Optional[str]
    attributes: dict[str, Any] = Field(default_factory=dict)
    author: Optional[str]
    created_at: str


class HistoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    item_id: int
    action: str
    from_status: Optional[str]
    to_status: Optional[str]
    actor: Optional[str]
    on_behalf_of: Optional[str] = None
    reason: Optional[str]
    created_at: str


class LookupRequest(BaseModel):
    ids: list[int] = Field(default_factory=list)
    full: bool = False


class ArchiveRequest(BaseModel):
    ids: list[int] = Field(min_length=1)
    reason: Optional[str] = None
    # Who asked for the archive; stored as on_behalf_of, never as the actor.
    actor: Optional[str] = None
    strict: bool = False

    @field_validator("reason", "actor")
    @classmethod
    def blank_to_none(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return value.strip() or None


class ArchiveResultOut(BaseModel):
    archived: list[int]
    already_archived: list[int]
    not_found: list[int]
    vector_sync: str
    pending_jobs: int
