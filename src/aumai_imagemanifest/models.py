"""Pydantic models for aumai-imagemanifest."""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator

__all__ = [
    "FSLayer",
    "HistoryEntry",
    "ImageManifest",
    "LayerInfo",
    "LayerRecord",
    "ManifestConfig",
    "RepositoryIdentity",
]


class LayerInfo(BaseModel):
    """The two fields of a layer's ``json`` entry the chain depends on."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    parent: str = ""

    @field_validator("parent", mode="before")
    @classmethod
    def _null_parent_is_root(cls, value: object) -> object:
        return "" if value is None else value


class LayerRecord(BaseModel):
    """A layer as assembled from its blob and metadata entries."""

    id: str
    parent_id: str = ""           # empty for the base layer
    blob_digest: str = ""         # sha256:<hex> of the gzip-compressed blob
    blob_size: int = 0            # compressed bytes, diagnostics only
    metadata_json: str = ""       # compact re-serialised layer json


class RepositoryIdentity(BaseModel):
    """Image name and tag taken from the ``repositories`` index."""

    name: str = ""
    tag: str = ""


class FSLayer(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    blob_sum: str = Field(alias="blobSum")


class HistoryEntry(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    v1_compatibility: str = Field(alias="v1Compatibility")


class ImageManifest(BaseModel):
    """
    Image manifest, schema version 1.

    ``fs_layers`` and ``history`` are positionally paired and ordered from
    the topmost layer down to the base layer.
    """

    model_config = ConfigDict(populate_by_name=True)

    schema_version: int = Field(default=1, alias="schemaVersion")
    name: str = ""
    tag: str = ""
    architecture: str = "amd64"
    fs_layers: list[FSLayer] = Field(default_factory=list, alias="fsLayers")
    history: list[HistoryEntry] = Field(default_factory=list)


class ManifestConfig(BaseModel):
    """Settings for a single manifest run. Built once, never mutated."""

    model_config = ConfigDict(frozen=True)

    archive_path: Path
    key_path: Path | None = None
    verbose: bool = False
    strict: bool = True
    architecture: str = "amd64"
