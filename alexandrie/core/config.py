"""
Registry configuration.

Settings are read from the environment (prefix ``ALEXANDRIE_``, nested
fields separated by ``__``) or an optional ``.env`` file, e.g.::

    ALEXANDRIE_INDEX__PATH=/srv/alexandrie/index
    ALEXANDRIE_STORAGE__TYPE=s3
    ALEXANDRIE_STORAGE__BUCKET=crates
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_REPO_ROOT = Path(__file__).resolve().parents[2]
_DEFAULT_DATA_DIR = _REPO_ROOT / "data"


class IndexSettings(BaseModel):
    path: Path = Field(
        default=_DEFAULT_DATA_DIR / "index",
        description="Working copy of the git registry index.",
    )
    remote_url: Optional[str] = Field(
        default=None,
        description="Upstream remote to pull from and push to. None disables both.",
    )
    author_name: str = Field(default="Alexandrie", description="Author name of index commits.")
    author_email: str = Field(default="alexandrie@localhost", description="Author email of index commits.")


class DiskStorageSettings(BaseModel):
    type: Literal["disk"] = "disk"
    path: Path = Field(default=_DEFAULT_DATA_DIR / "crates")


class S3StorageSettings(BaseModel):
    type: Literal["s3"] = "s3"
    bucket: str
    key_prefix: str = Field(default="crates")
    region: Optional[str] = None
    endpoint_url: Optional[str] = Field(
        default=None,
        description="Custom endpoint for S3-compatible services.",
    )


StorageSettings = Annotated[
    Union[DiskStorageSettings, S3StorageSettings],
    Field(discriminator="type"),
]


class RegistrySettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="ALEXANDRIE_",
        env_nested_delimiter="__",
        env_file=".env",
        extra="ignore",
    )

    api_url: str = Field(
        default="http://localhost:3000",
        description="Public base URL, used to build `config.json` of a new index.",
    )
    index: IndexSettings = Field(default_factory=IndexSettings)
    storage: StorageSettings = Field(default_factory=DiskStorageSettings)
    database_url: str = Field(default=f"sqlite+aiosqlite:///{_DEFAULT_DATA_DIR / 'alexandrie.db'}")

    max_crate_size: int = Field(default=10 * 1024 * 1024, description="Maximum tarball size in bytes.")
    max_metadata_size: int = Field(default=1024 * 1024, description="Maximum metadata JSON size in bytes.")
    upload_timeout_seconds: float = Field(default=60.0)

    max_keywords: int = 5
    max_keyword_length: int = 20
    max_categories: int = 5
    max_category_length: int = 64

    allow_yanked_downloads: bool = Field(
        default=True,
        description="Serve tarballs of yanked versions (Cargo lockfiles may still pin them).",
    )
    search_per_page: int = 10
