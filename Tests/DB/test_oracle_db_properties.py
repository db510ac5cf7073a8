# test_oracle_db_properties.py
#
# Property-based tests for the OracleCardsDB store using Hypothesis.
#
# Imports
import uuid
from contextlib import contextmanager
from datetime import timedelta
#
# Third-Party Imports
from hypothesis import given, strategies as st, settings, HealthCheck
#
# Local Imports
from oracle_cards.Constants import TABLE_CARDS, TABLE_DECKS
from oracle_cards.DB.Oracle_DB import OracleCardsDB, ApplyOutcome
from oracle_cards.DB.entities import Deck
#
########################################################################################################################
#
# Functions:

settings.register_profile(
    "db_friendly",
    deadline=1000,
    suppress_health_check=[
        HealthCheck.too_slow,
        HealthCheck.function_scoped_fixture
    ]
)
settings.load_profile("db_friendly")


# --- Hypothesis Strategies ---

st_required_text = st.text(st.characters(blacklist_categories=("Cs", "Cc")), min_size=1, max_size=60).filter(lambda s: s.strip())

# ("add", None) creates a card; ("delete", n) soft-deletes the n-th card created so far.
st_card_ops = st.lists(
    st.one_of(st.just(("add", None)), st.tuples(st.just("delete"), st.integers(min_value=0, max_value=20))),
    max_size=25,
)

# Offsets in milliseconds relative to a shared base instant.
st_offset_ms = st.integers(min_value=-10_000, max_value=10_000)


# --- Helpers ---

@contextmanager
def fresh_db(tmp_path, clock):
    """Hypothesis reuses function-scoped fixtures across examples, so each example opens its own file."""
    db = OracleCardsDB(tmp_path / f"prop-{uuid.uuid4().hex}.db", "hypothesis-user", clock=clock)
    try:
        yield db
    finally:
        db.close_connection()


# --- Properties ---

class TestDeckCounterProperties:
    @given(ops=st_card_ops)
    def test_card_count_always_matches_active_cards(self, tmp_path, clock, ops):
        with fresh_db(tmp_path, clock) as db:
            deck = db.add_deck("Counted")
            created = []
            for op, index in ops:
                clock.advance(0.5)
                if op == "add":
                    created.append(db.add_card(deck.id, f"Card {len(created)}").id)
                elif created:
                    db.soft_delete_card(created[index % len(created)])

                active = db.list_cards_for_deck(deck.id)
                assert db.get_deck(deck.id).card_count == len(active)


class TestDirtyTrackingProperties:
    @given(names=st.lists(st_required_text, min_size=1, max_size=8), data=st.data())
    def test_dirty_set_is_exactly_the_unsynced_mutations(self, tmp_path, clock, names, data):
        with fresh_db(tmp_path, clock) as db:
            decks = [db.add_deck(name) for name in names]
            to_sync = data.draw(st.sets(st.sampled_from([d.id for d in decks])))
            for deck in decks:
                if deck.id in to_sync:
                    assert db.mark_record_synced(TABLE_DECKS, deck.id, deck.updated_at)

            to_edit = data.draw(st.sets(st.sampled_from([d.id for d in decks])))
            clock.advance(1)
            for deck_id in to_edit:
                db.update_deck(deck_id, {"description": "edited"})

            expected_dirty = {d.id for d in decks if d.id not in to_sync or d.id in to_edit}
            assert {r.id for r in db.get_dirty_records(TABLE_DECKS)} == expected_dirty
            assert db.count_dirty_records(TABLE_DECKS) == len(expected_dirty)


class TestLastWriteWinsProperties:
    @given(local_offset=st_offset_ms, remote_offset=st_offset_ms)
    def test_newer_timestamp_wins(self, tmp_path, clock, local_offset, remote_offset):
        with fresh_db(tmp_path, clock) as db:
            base = clock.now
            deck = db.add_deck("Base")
            db.mark_record_synced(TABLE_DECKS, deck.id, deck.updated_at)

            clock.now = base + timedelta(milliseconds=local_offset)
            local = db.update_deck(deck.id, {"name": "Local"})
            remote = Deck.model_validate({
                **deck.model_dump(), "name": "Remote", "synced_at": None, "remote_known": False,
                "updated_at": base + timedelta(milliseconds=remote_offset),
            })

            result = db.apply_remote_record(remote)
            stored = db.get_deck(deck.id)
            if remote.updated_at > local.updated_at:
                assert result.outcome == ApplyOutcome.REMOTE_WON
                assert stored.name == "Remote"
                assert not stored.is_dirty
            else:
                assert result.outcome == ApplyOutcome.LOCAL_WON
                assert stored.name == "Local"
                assert stored.is_dirty

    @given(title=st_required_text, keywords=st.lists(st.text(max_size=20), max_size=5),
           remote_offset=st_offset_ms)
    def test_applying_twice_is_idempotent(self, tmp_path, clock, title, keywords, remote_offset):
        with fresh_db(tmp_path, clock) as db:
            deck = db.add_deck("Parent")
            card = db.add_card(deck.id, title, keywords=keywords)
            db.mark_record_synced(TABLE_CARDS, card.id, card.updated_at)
            remote = card.model_copy(update={
                "meaning": "from elsewhere", "synced_at": None, "remote_known": False,
                "updated_at": card.updated_at + timedelta(milliseconds=abs(remote_offset) + 1),
            })

            first = db.apply_remote_record(remote)
            after_first = db.get_card(card.id)
            second = db.apply_remote_record(remote)

            assert first.outcome == ApplyOutcome.UPDATED
            assert second.outcome == ApplyOutcome.UNCHANGED
            assert db.get_card(card.id) == after_first
            assert after_first.keywords == keywords

#
# End of test_oracle_db_properties.py
########################################################################################################################
