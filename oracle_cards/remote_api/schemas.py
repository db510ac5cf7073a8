# oracle_cards/remote_api/schemas.py
#
# Wire models for the sync-delta endpoint.
#
# Imports
from datetime import datetime
from typing import List, Optional, Dict, Any, Literal
#
# 3rd-party Libraries
from pydantic import BaseModel, Field, field_validator
#
# Local Imports
from oracle_cards.DB.entities import ensure_utc
#
########################################################################################################################
#
# Functions:

OperationType = Literal['INSERT', 'UPDATE', 'DELETE']


class PushOperation(BaseModel):
    table: str
    operation: OperationType
    id: str
    data: Optional[Dict[str, Any]] = None # Wire row; omitted for DELETE


class DeltaRequest(BaseModel):
    pull_since: Optional[datetime] = None # None means "push only"
    push_ops: List[PushOperation] = Field(default_factory=list)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "pull_since": ensure_utc(self.pull_since).isoformat() if self.pull_since else None,
            "push_ops": [op.model_dump() for op in self.push_ops],
        }


class PushResult(BaseModel):
    # The endpoint echoes the whole operation back next to its outcome.
    operation: PushOperation
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class DeltaResponse(BaseModel):
    push_results: List[PushResult] = Field(default_factory=list)
    pull_changes: Dict[str, List[Dict[str, Any]]] = Field(default_factory=dict)
    # Per-table pull failures, reported by the endpoint as "<table>_error" keys.
    pull_errors: Dict[str, str] = Field(default_factory=dict)
    server_timestamp: Optional[datetime] = None

    @field_validator('server_timestamp')
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "DeltaResponse":
        """
        Builds a response from the raw endpoint JSON.

        Accepts both `server_timestamp` and the older `timestamp` key, and splits
        `"<table>_error"` entries out of `pull_changes`.
        """
        changes: Dict[str, List[Dict[str, Any]]] = {}
        errors: Dict[str, str] = {}
        for key, value in (payload.get("pull_changes") or {}).items():
            if key.endswith("_error"):
                errors[key[:-len("_error")]] = str(value)
            elif isinstance(value, list):
                changes[key] = value
        return cls(
            push_results=payload.get("push_results") or [],
            pull_changes=changes,
            pull_errors=errors,
            server_timestamp=payload.get("server_timestamp") or payload.get("timestamp"),
        )

#
# End of oracle_cards/remote_api/schemas.py
########################################################################################################################
