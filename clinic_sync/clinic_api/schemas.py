# clinic_sync/clinic_api/schemas.py
from typing import List, Optional, Dict, Any
from pydantic import BaseModel, ConfigDict, Field, field_validator

# Entity records travel as opaque JSON objects with at least `id`, `createdAt`, `updatedAt`.
Record = Dict[str, Any]


def unwrap_record(payload: Any) -> Optional[Record]:
    """Accepts either a bare record or an envelope like {"data": {...}}."""
    if isinstance(payload, dict):
        if "id" not in payload and isinstance(payload.get("data"), dict):
            return payload["data"]
        return payload
    return None


class ChangesPage(BaseModel):
    """
    One pull response for one entity type.

    The server may answer `GET <endpoint>?since=...` with a bare JSON list of records,
    or with an object carrying `items` (or `data`), `deleted` ids and a `serverTimestamp`.
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    items: List[Record] = Field(default_factory=list)
    deleted: List[str] = Field(default_factory=list)
    server_timestamp: Optional[str] = Field(default=None, alias="serverTimestamp")

    @field_validator("deleted", mode="before")
    @classmethod
    def _ids_as_strings(cls, value):
        if value is None:
            return []
        return [str(v) for v in value]

    @classmethod
    def from_response(cls, payload: Any) -> "ChangesPage":
        if payload is None:
            return cls()
        if isinstance(payload, list):
            return cls(items=payload)
        if isinstance(payload, dict):
            items = payload.get("items")
            if items is None:
                items = payload.get("data", [])
            return cls(items=items or [], deleted=payload.get("deleted") or [],
                       serverTimestamp=payload.get("serverTimestamp"))
        raise ValueError(f"Unexpected pull response shape: {type(payload).__name__}")
