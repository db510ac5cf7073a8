# oracle_cards/remote_api/utils.py
#
# Conversion between local entities and wire rows. JSON encoding of list fields
# and datetimes only happens here and in the gateways.
#
# Imports
import json
import logging
from typing import Dict, Any
#
# 3rd-party Libraries
from pydantic import ValidationError
#
# Local Imports
from oracle_cards.Constants import OP_INSERT, OP_UPDATE, OP_DELETE, SYNC_TABLES
from oracle_cards.DB.entities import SyncableRecord, LOCAL_ONLY_FIELDS, model_for_table
from .exceptions import WireFormatError
from .schemas import PushOperation
#
#######################################################################################################################
#
# Functions:

logger = logging.getLogger(__name__)


def record_to_wire(record: SyncableRecord) -> Dict[str, Any]:
    """
    Converts an entity into a JSON-ready row for the remote store.
    Local bookkeeping (`synced_at`, `remote_known`) is never sent.
    """
    return record.model_dump(mode="json", exclude=set(LOCAL_ONLY_FIELDS))


def record_from_wire(table: str, row: Dict[str, Any]) -> SyncableRecord:
    """
    Parses a remote row into the entity type of `table`.

    Embedded join results (e.g. the `decks` object PostgREST adds when cards are
    filtered through deck ownership) are dropped, and list fields that arrive as
    JSON text are decoded.

    Raises:
        WireFormatError: If the row cannot be turned into a valid entity.
    """
    try:
        model = model_for_table(table)
    except ValueError as e:
        raise WireFormatError(str(e)) from e

    cleaned = {}
    for key, value in row.items():
        if key in LOCAL_ONLY_FIELDS:
            continue
        if key in SYNC_TABLES and isinstance(value, (dict, list)):
            continue
        cleaned[key] = value

    for field in model.JSON_FIELDS:
        raw = cleaned.get(field)
        if isinstance(raw, str):
            try:
                cleaned[field] = json.loads(raw)
            except json.JSONDecodeError as e:
                raise WireFormatError(f"Field '{field}' of {table} row {row.get('id')} is not valid JSON: {e}") from e

    try:
        return model.model_validate(cleaned)
    except ValidationError as e:
        raise WireFormatError(f"Invalid {table} row {row.get('id')}: {e}") from e


def build_push_op(record: SyncableRecord) -> PushOperation:
    """
    Chooses the delta operation for a dirty record: DELETE for tombstones, INSERT
    when the remote store has never seen the record, UPDATE otherwise.
    """
    if record.is_deleted:
        operation = OP_DELETE
    elif not record.remote_known:
        operation = OP_INSERT
    else:
        operation = OP_UPDATE
    return PushOperation(table=record.TABLE, operation=operation, id=record.id, data=record_to_wire(record))

#
# End of utils.py
#######################################################################################################################
