# oracle_cards/remote_api/gateway.py
#
# Imports
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, Dict, Any, List
#
# Local Imports
from .schemas import DeltaResponse, PushOperation
#
########################################################################################################################
#
# Functions:

class RemoteGateway(ABC):
    """
    Transport abstraction over the remote store.

    All methods are coroutines; they are the only suspension points of a sync cycle.
    Implementations raise `TransportError` for retryable failures and
    `RejectedError` (or its `AuthenticationError` subclass) when the backend
    refuses an operation.

    Rows are wire dicts (see `utils.record_to_wire` / `utils.record_from_wire`).
    """

    @property
    def supports_delta(self) -> bool:
        """True when `sync_delta` is available."""
        return False

    @abstractmethod
    async def fetch_updated_since(self, table: str, since: Optional[datetime], owner_id: str) -> List[Dict[str, Any]]:
        """
        Rows of `table` owned by `owner_id` with `updated_at >= since`.
        With `since=None` returns every live (non-deleted) row.
        """

    @abstractmethod
    async def upsert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        """Inserts or updates one row by id; returns the stored row."""

    @abstractmethod
    async def delete(self, table: str, record_id: str, deleted_at: Optional[datetime] = None) -> None:
        """
        Deletes one row. Backends keep a tombstone stamped with `deleted_at` so
        other devices pull the deletion.
        """

    async def sync_delta(self, pull_since: Optional[datetime], push_ops: List[PushOperation]) -> DeltaResponse:
        """Batched push + pull in one round-trip. Push ops are applied before the pull is read."""
        raise NotImplementedError(f"{type(self).__name__} does not support the delta endpoint.")

    async def close(self) -> None:
        pass

#
# End of oracle_cards/remote_api/gateway.py
########################################################################################################################
