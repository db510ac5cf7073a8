# test_wire_utils.py
#
# Imports
import json
#
# Third-Party Imports
import pytest
#
# Local Imports
from oracle_cards.Constants import OP_DELETE, OP_INSERT, OP_UPDATE, TABLE_CARDS, TABLE_DECKS, TABLE_READINGS
from oracle_cards.DB.Oracle_DB import OracleCardsDB
from oracle_cards.DB.entities import Card, Reading
from oracle_cards.remote_api.exceptions import WireFormatError
from oracle_cards.remote_api.utils import build_push_op, record_from_wire, record_to_wire
#
#######################################################################################################################
#
# Functions:

CARD_ROW = {
    "id": "c1", "deck_id": "d1", "title": "The Tide", "meaning": None,
    "keywords": '["water", "moon"]', "symbols": None, "style_template": "mystical", "image_url": None,
    "position": 2, "created_at": "2025-01-01T12:00:00+00:00", "updated_at": "2025-01-01T12:30:00Z",
    "is_deleted": False,
}


class TestRecordFromWire:
    def test_json_text_lists_and_embedded_joins_are_decoded(self):
        row = {**CARD_ROW, "decks": {"user_id": "user-alice"}, "synced_at": "2025-01-01T13:00:00Z"}
        card = record_from_wire(TABLE_CARDS, row)

        assert isinstance(card, Card)
        assert card.keywords == ["water", "moon"]
        assert card.symbols == []
        assert card.updated_at.utcoffset().total_seconds() == 0
        # Local bookkeeping is never taken from the remote copy.
        assert card.synced_at is None
        assert card.remote_known is False

    def test_nested_reading_positions_are_validated(self):
        row = {"id": "r1", "user_id": "user-alice", "deck_id": "d1", "spread_type": "three-card",
               "card_positions": json.dumps([{"card_id": "c1", "position": 0, "position_meaning": "Past"}]),
               "created_at": "2025-01-01T12:00:00Z", "updated_at": "2025-01-01T12:00:00Z"}
        reading = record_from_wire(TABLE_READINGS, row)
        assert isinstance(reading, Reading)
        assert reading.card_positions[0].position_meaning == "Past"

    @pytest.mark.parametrize("row", [
        {**CARD_ROW, "title": ""},
        {**CARD_ROW, "keywords": "[not json"},
        {k: v for k, v in CARD_ROW.items() if k != "updated_at"},
    ], ids=["empty_title", "bad_json", "missing_timestamp"])
    def test_invalid_rows_raise_wire_format_error(self, row):
        with pytest.raises(WireFormatError):
            record_from_wire(TABLE_CARDS, row)

    def test_unknown_table_raises_wire_format_error(self):
        with pytest.raises(WireFormatError):
            record_from_wire("payments", {"id": "x"})


class TestRecordToWire:
    def test_local_fields_are_not_sent(self, db_instance: OracleCardsDB):
        deck = db_instance.add_deck("Wire")
        card = db_instance.add_card(deck.id, "Sent", keywords=["a"])
        row = record_to_wire(card)
        assert "synced_at" not in row and "remote_known" not in row
        assert row["keywords"] == ["a"]
        assert isinstance(row["updated_at"], str)
        assert record_from_wire(TABLE_CARDS, row).same_snapshot(card)


class TestBuildPushOp:
    def test_operation_follows_record_state(self, db_instance: OracleCardsDB):
        deck = db_instance.add_deck("Ops")
        assert build_push_op(db_instance.get_deck(deck.id)).operation == OP_INSERT

        db_instance.mark_record_synced(TABLE_DECKS, deck.id, db_instance.get_deck(deck.id).updated_at)
        updated = db_instance.update_deck(deck.id, {"name": "Ops 2"})
        op = build_push_op(updated)
        assert op.operation == OP_UPDATE
        assert op.data["name"] == "Ops 2"

        db_instance.soft_delete_deck(deck.id)
        deleted = db_instance.get_record(TABLE_DECKS, deck.id, include_deleted=True)
        op = build_push_op(deleted)
        assert op.operation == OP_DELETE
        assert op.data["is_deleted"] is True

#
# End of test_wire_utils.py
#######################################################################################################################
