from __future__ import annotations
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field
import time

class InboundEvent(BaseModel):
    table: str
    type: str = "INSERT"
    schema_name: str = Field(default="public", alias="schema")
    record: Dict[str, Any] = Field(default_factory=dict)
    old_record: Optional[Dict[str, Any]] = None
    commit_timestamp: Optional[str] = None
    received: float = Field(default_factory=time.time)

    model_config = {"populate_by_name": True}

    @property
    def payload(self) -> Dict[str, Any]:
        return self.record
