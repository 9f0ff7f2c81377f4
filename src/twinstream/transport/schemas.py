"""Request bodies for the HTTP API."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class CompareRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    prompt: str
    model_id1: str = Field(alias="modelId1")
    model_id2: str = Field(alias="modelId2")


class DeleteManyRequest(BaseModel):
    ids: list[str] = Field(default_factory=list)


class CleanupRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    older_than_days: Optional[int] = Field(default=None, ge=1, alias="olderThanDays")
    keep_count: Optional[int] = Field(default=None, ge=0, alias="keepCount")
    remove_errors: bool = Field(default=False, alias="removeErrors")
