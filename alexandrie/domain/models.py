"""
Pydantic models for the crate registry.

This module defines the data models exchanged with Cargo clients and
written to the registry index:
- Publish metadata (the JSON half of the upload envelope)
- Index entries and the index `config.json`
- Records handed between the stores and the services
- API response bodies

All models use Pydantic for validation and serialization.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


DependencyKind = Literal["normal", "build", "dev"]


# ---------------------------------------------------------------------------
# Publish metadata (sent by `cargo publish`)
# ---------------------------------------------------------------------------


class CrateDependencyMeta(BaseModel):
    """
    A dependency as described in the publish metadata.

    `explicit_name_in_toml` is set when the dependency was renamed in the
    manifest; `name` is then the real crate name.
    """

    model_config = ConfigDict(extra="ignore")

    name: str
    version_req: str
    features: List[str] = Field(default_factory=list)
    optional: bool = False
    default_features: bool = True
    target: Optional[str] = None
    kind: Optional[DependencyKind] = None
    registry: Optional[str] = None
    explicit_name_in_toml: Optional[str] = None


class CrateMeta(BaseModel):
    """
    Metadata JSON of a publish upload.
    """

    model_config = ConfigDict(extra="ignore")

    name: str
    vers: str
    deps: List[CrateDependencyMeta] = Field(default_factory=list)
    features: Dict[str, List[str]] = Field(default_factory=dict)
    authors: List[str] = Field(default_factory=list)
    description: Optional[str] = None
    homepage: Optional[str] = None
    documentation: Optional[str] = None
    readme: Optional[str] = Field(
        default=None,
        description="Inline README content in Markdown.",
    )
    readme_file: Optional[str] = Field(
        default=None,
        description="Path of the README inside the crate tarball.",
    )
    keywords: List[str] = Field(default_factory=list)
    categories: List[str] = Field(default_factory=list)
    license: Optional[str] = None
    license_file: Optional[str] = None
    repository: Optional[str] = None
    badges: Dict[str, Any] = Field(default_factory=dict)
    links: Optional[str] = None


# ---------------------------------------------------------------------------
# Registry index
# ---------------------------------------------------------------------------


class IndexDependency(BaseModel):
    name: str
    req: str
    features: List[str] = Field(default_factory=list)
    optional: bool = False
    default_features: bool = True
    target: Optional[str] = None
    kind: DependencyKind = "normal"
    registry: Optional[str] = None
    package: Optional[str] = Field(
        default=None,
        description="Real crate name when the dependency is renamed (`name` is then the rename).",
    )


class IndexEntry(BaseModel):
    """
    One line of a crate's file in the registry index.

    Field order matches what Cargo clients expect on the wire.
    """

    name: str
    vers: str
    deps: List[IndexDependency] = Field(default_factory=list)
    cksum: str
    features: Dict[str, List[str]] = Field(default_factory=dict)
    yanked: bool = False
    links: Optional[str] = None

    def to_line(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_line(cls, line: str | bytes) -> "IndexEntry":
        return cls.model_validate_json(line)


class RegistryIndexConfig(BaseModel):
    """
    Contents of `config.json` at the root of the index.
    """

    model_config = ConfigDict(populate_by_name=True)

    dl: str = Field(description="Download URL template.")
    api: Optional[str] = Field(default=None, description="Base URL of the registry API.")
    allowed_registries: Optional[List[str]] = Field(
        default=None,
        alias="allowed-registries",
        description="Other registries crates of this index may depend on.",
    )

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True, indent=4) + "\n"


# ---------------------------------------------------------------------------
# Store records
# ---------------------------------------------------------------------------


class CrateRecord(BaseModel):
    id: Optional[int] = None
    name: str
    canon_name: str
    description: Optional[str] = None
    documentation: Optional[str] = None
    homepage: Optional[str] = None
    repository: Optional[str] = None
    downloads: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class VersionRecord(BaseModel):
    id: Optional[int] = None
    crate_id: int
    num: str
    cksum: str
    yanked: bool = False
    downloads: int = 0
    license: Optional[str] = None
    links: Optional[str] = None
    features: Dict[str, List[str]] = Field(default_factory=dict)
    created_at: Optional[datetime] = None


class AccountRecord(BaseModel):
    id: int
    login: str
    name: Optional[str] = None


class SearchDocument(BaseModel):
    """What the search engine indexes for a crate."""

    crate_id: int
    name: str
    description: Optional[str] = None
    keywords: List[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# API responses
# ---------------------------------------------------------------------------


class PublishWarnings(BaseModel):
    invalid_categories: List[str] = Field(default_factory=list)
    invalid_badges: List[str] = Field(default_factory=list)
    other: List[str] = Field(default_factory=list)


class PublishResponse(BaseModel):
    warnings: PublishWarnings = Field(default_factory=PublishWarnings)


class OkResponse(BaseModel):
    ok: bool = True
    msg: Optional[str] = None


class OwnerEntry(BaseModel):
    id: int
    login: str
    name: Optional[str] = None


class OwnersResponse(BaseModel):
    users: List[OwnerEntry]


class OwnersRequest(BaseModel):
    users: List[str]


class SearchResultCrate(BaseModel):
    name: str
    max_version: str
    description: Optional[str] = None
    downloads: int = 0
    created_at: datetime
    updated_at: datetime
    documentation: Optional[str] = None
    repository: Optional[str] = None


class SearchMeta(BaseModel):
    total: int


class SearchResponse(BaseModel):
    crates: List[SearchResultCrate]
    meta: SearchMeta


class CrateInfo(BaseModel):
    name: str
    max_version: Optional[str] = None
    description: Optional[str] = None
    documentation: Optional[str] = None
    homepage: Optional[str] = None
    repository: Optional[str] = None
    downloads: int = 0
    created_at: datetime
    updated_at: datetime
    keywords: List[str] = Field(default_factory=list)
    categories: List[str] = Field(default_factory=list)
    badges: Dict[str, Dict[str, str]] = Field(default_factory=dict)
    versions: List[str] = Field(default_factory=list)


class Suggestion(BaseModel):
    name: str
    vers: str


class SuggestResponse(BaseModel):
    suggestions: List[Suggestion]


class CategoryEntry(BaseModel):
    name: str
    tag: str
    description: str = ""


class CategoriesMeta(BaseModel):
    total: int


class CategoriesResponse(BaseModel):
    categories: List[CategoryEntry]
    meta: CategoriesMeta
