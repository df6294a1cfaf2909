"""Source descriptors and connectivity status models."""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field, field_validator, model_validator

FNV_OFFSET_BASIS = 0x811C9DC5  # 32-bit FNV-1a offset basis
FNV_PRIME = 0x01000193         # 32-bit FNV-1a prime


def source_id_for(name: str) -> int:
    """
    Derive a stable numeric id from a source name.

    Uses a 32-bit FNV-1a hash over the UTF-8 bytes of the lower-cased name,
    folded into a signed 32-bit integer so it fits an INTEGER column.
    """
    value = FNV_OFFSET_BASIS
    for byte in name.strip().lower().encode("utf-8"):
        value ^= byte
        value = (value * FNV_PRIME) & 0xFFFFFFFF
    if value >= 0x80000000:
        value -= 0x100000000
    return value


class Topology(str, Enum):
    """Deployment topology of a monitored source."""
    ON_PREMISES = "on_premises"
    MANAGED_INSTANCE = "managed_instance"
    AWS_RDS = "aws_rds"
    AZURE_SQL_DB = "azure_sql_db"


class Source(BaseModel):
    """A monitored remote SQL Server endpoint."""
    id: Optional[int] = Field(default=None, description="Stable numeric id (derived from name when omitted)")
    name: str = Field(description="Display name, also written as server_name")
    url: str = Field(description="SQLAlchemy connection URL")
    topology: Topology = Field(default=Topology.ON_PREMISES, description="Configured deployment topology")
    enabled: bool = Field(default=True, description="Collect from this source")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("source name cannot be empty")
        return v.strip()

    @model_validator(mode="after")
    def derive_id(self) -> "Source":
        if self.id is None:
            self.id = source_id_for(self.name)
        return self

    def __str__(self) -> str:
        return f"{self.name} (id={self.id})"


class SourceStatus(BaseModel):
    """Result of a connectivity check against a source."""
    source_id: int
    reachable: bool = False
    checked_at: datetime
    error: Optional[str] = None
    server_start_time: Optional[datetime] = None
    product_version: Optional[str] = None
    major_version: int = 0
    engine_edition: int = 0
    utc_offset_minutes: int = 0
    is_aws_rds: bool = False

    @property
    def detected_topology(self) -> Optional[Topology]:
        """Topology implied by the server properties, if it was reachable."""
        if not self.reachable or not self.engine_edition:
            return None
        if self.engine_edition == 5:
            return Topology.AZURE_SQL_DB
        if self.engine_edition == 8:
            return Topology.MANAGED_INSTANCE
        if self.is_aws_rds:
            return Topology.AWS_RDS
        return Topology.ON_PREMISES
