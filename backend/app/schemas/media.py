from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field


class DerivativeRead(BaseModel):
    url: str
    width: int
    height: int


class AssetImageMetadata(BaseModel):
    width: int | None = None
    height: int | None = None
    format: str | None = None


class AssetUploadRead(BaseModel):
    id: UUID
    url: str
    filename: str
    original_name: str | None = Field(default=None, serialization_alias="originalName")
    mime_type: str = Field(serialization_alias="mimeType")
    size: int
    thumbnails: dict[str, DerivativeRead] = Field(default_factory=dict)
    metadata: AssetImageMetadata
    uploaded_at: datetime = Field(serialization_alias="uploadedAt")


class AssetUploadResponse(BaseModel):
    images: list[AssetUploadRead]
    count: int


class AssetMetadataRead(BaseModel):
    id: UUID
    filename: str
    size: int
    width: int
    height: int
    format: str | None = None
    mime_type: str | None = Field(default=None, serialization_alias="mimeType")
    has_profile: bool = Field(default=False, serialization_alias="hasProfile")
    orientation: int | None = None
    density: int | None = None
    created_at: datetime = Field(serialization_alias="createdAt")
    modified_at: datetime = Field(serialization_alias="modifiedAt")


class AssetDeleteResponse(BaseModel):
    id: UUID
    outcome: str
    removed: int = 0
    missing: int = 0
