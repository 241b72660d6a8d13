# pulseboard/models/rows.py
# Purpose: Pydantic row schemas for the realtime feeds. Numeric fields are
# coerced from loosely typed payloads and range-checked at ingestion.

from __future__ import annotations
from typing import Any, Dict, Optional, Union
from pydantic import BaseModel, ConfigDict, Field, field_validator

RowId = Union[int, str]


class RowModel(BaseModel):
    """Base for feed rows. Unknown columns are kept; NaN/inf are rejected."""

    model_config = ConfigDict(extra="allow", allow_inf_nan=False)

    id: RowId


class LiveSale(RowModel):
    """A completed POS sale."""
    total_amount: float = Field(ge=0)
    customer_name: Optional[str] = None
    payment_method: Optional[str] = None
    created_at: Optional[str] = None


class TelemetryEvent(RowModel):
    """One row of system_global_telemetry."""
    event_name: str = ""
    event_category: str = "SYSTEM"
    severity: str = "INFO"
    metadata: Dict[str, Any] = Field(default_factory=dict)
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)
    created_at: Optional[str] = None

    @field_validator("severity", "event_category", mode="before")
    @classmethod
    def _upper(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v

    @field_validator("metadata", mode="before")
    @classmethod
    def _null_metadata(cls, v: Any) -> Any:
        return {} if v is None else v


class GeoMarker(RowModel):
    """A visitor or threat marker; coordinates are mandatory."""
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    country: Optional[str] = None
    city: Optional[str] = None
    hits: int = Field(default=1, ge=0)
    is_anomaly: bool = False
    created_at: Optional[str] = None


class AuditAnomaly(RowModel):
    """An entry of the LiveGuard anomaly register."""
    description: str = ""
    risk_score: float = Field(ge=0, le=100)
    amount: Optional[float] = None
    tenant_id: Optional[str] = None
    detected_at: Optional[str] = None


class TacticalComm(RowModel):
    """Operator notification pushed to the header bell."""
    priority: str = "NORMAL"
    subject: Optional[str] = None
    body: str = ""
    sender: Optional[str] = None
    created_at: Optional[str] = None

    @field_validator("priority", mode="before")
    @classmethod
    def _upper(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v
