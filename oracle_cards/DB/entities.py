# entities.py
# Description: Typed entity models for the oracle card entity store.
#
"""
entities.py
-----------

Pydantic models for every synchronizable record type (Profile, Deck, Card,
Reading, JournalEntry). All of them share the `SyncableRecord` contract:

- `id`: client-generated UUID, the join key between the local and remote copies.
- `created_at` / `updated_at`: timezone-aware UTC datetimes.
- `synced_at`: last instant the local copy was confirmed to match the remote one.
- `is_deleted`: soft-delete marker.
- `remote_known`: local bookkeeping, True once the remote store is known to hold the record.

List-valued fields (keywords, symbols, tags, photo_urls, card_positions) are typed
Python lists here; JSON text only exists inside the SQLite columns and on the wire.
"""
# Imports
from datetime import datetime, timezone
from typing import Any, ClassVar, Dict, List, Literal, Optional, Tuple, Type
#
# Third-Party Imports
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
#
# Local Imports
from oracle_cards.Constants import (
    TABLE_PROFILES, TABLE_DECKS, TABLE_CARDS, TABLE_READINGS, TABLE_JOURNAL_ENTRIES,
    DEFAULT_SUBSCRIPTION_TIER, SPREAD_TYPES,
)
#
########################################################################################################################
#
# Functions:

SpreadType = Literal['single', 'three-card', 'five-card', 'celtic-cross', 'custom']
SubscriptionTier = Literal['free', 'premium', 'pro']

METADATA_FIELDS = ('id', 'created_at', 'updated_at', 'synced_at', 'is_deleted', 'remote_known')
# Never sent to the remote store.
LOCAL_ONLY_FIELDS = ('synced_at', 'remote_known')


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive datetimes are taken to be UTC; aware ones are converted to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class SyncableRecord(BaseModel):
    """Common structural contract of every record the sync core moves around."""
    model_config = ConfigDict(extra='ignore')

    TABLE: ClassVar[str] = ""
    # Column used to scope the record to its owner (None when scoped through a parent).
    OWNER_FIELD: ClassVar[Optional[str]] = None
    # (parent_table, foreign_key_column)
    PARENT: ClassVar[Optional[Tuple[str, str]]] = None
    # Fields persisted as JSON text in SQLite.
    JSON_FIELDS: ClassVar[Tuple[str, ...]] = ()
    ORDER_BY: ClassVar[str] = "created_at DESC"
    # Payload fields fixed at creation time.
    IMMUTABLE_FIELDS: ClassVar[Tuple[str, ...]] = ()

    id: str
    created_at: datetime
    updated_at: datetime
    synced_at: Optional[datetime] = None
    is_deleted: bool = False
    remote_known: bool = False

    @field_validator('created_at', 'updated_at', 'synced_at')
    @classmethod
    def _normalize_timestamps(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)

    @property
    def is_dirty(self) -> bool:
        return self.synced_at is None or self.synced_at < self.updated_at

    @classmethod
    def payload_fields(cls) -> List[str]:
        return [name for name in cls.model_fields if name not in METADATA_FIELDS]

    @classmethod
    def mutable_fields(cls) -> List[str]:
        return [name for name in cls.payload_fields() if name not in cls.IMMUTABLE_FIELDS]

    def payload(self) -> Dict[str, Any]:
        return self.model_dump(include=set(self.payload_fields()))

    def same_snapshot(self, other: "SyncableRecord") -> bool:
        """True when both copies hold the same remote-visible state."""
        exclude = set(LOCAL_ONLY_FIELDS)
        return self.model_dump(exclude=exclude) == other.model_dump(exclude=exclude)


class Profile(SyncableRecord):
    TABLE: ClassVar[str] = TABLE_PROFILES
    OWNER_FIELD: ClassVar[Optional[str]] = "id"
    IMMUTABLE_FIELDS: ClassVar[Tuple[str, ...]] = ()

    email: str
    username: Optional[str] = None
    avatar_url: Optional[str] = None
    subscription_tier: SubscriptionTier = DEFAULT_SUBSCRIPTION_TIER


class Deck(SyncableRecord):
    TABLE: ClassVar[str] = TABLE_DECKS
    OWNER_FIELD: ClassVar[Optional[str]] = "user_id"
    IMMUTABLE_FIELDS: ClassVar[Tuple[str, ...]] = ("user_id", "card_count")

    user_id: str
    name: str = Field(min_length=1)
    description: Optional[str] = None
    cover_image_url: Optional[str] = None
    card_count: int = Field(default=0, ge=0)


class Card(SyncableRecord):
    TABLE: ClassVar[str] = TABLE_CARDS
    PARENT: ClassVar[Optional[Tuple[str, str]]] = (TABLE_DECKS, "deck_id")
    JSON_FIELDS: ClassVar[Tuple[str, ...]] = ("keywords", "symbols")
    ORDER_BY: ClassVar[str] = "position ASC, created_at ASC"
    IMMUTABLE_FIELDS: ClassVar[Tuple[str, ...]] = ("deck_id",)

    deck_id: str
    title: str = Field(min_length=1)
    meaning: Optional[str] = None
    keywords: List[str] = Field(default_factory=list)
    style_template: Optional[str] = None
    symbols: List[str] = Field(default_factory=list)
    image_url: Optional[str] = None
    position: int = 0

    @field_validator('keywords', 'symbols', mode='before')
    @classmethod
    def _none_to_empty(cls, value):
        return [] if value is None else value


class CardPosition(BaseModel):
    card_id: str
    position: int
    position_meaning: Optional[str] = None


class Reading(SyncableRecord):
    TABLE: ClassVar[str] = TABLE_READINGS
    OWNER_FIELD: ClassVar[Optional[str]] = "user_id"
    PARENT: ClassVar[Optional[Tuple[str, str]]] = (TABLE_DECKS, "deck_id")
    JSON_FIELDS: ClassVar[Tuple[str, ...]] = ("card_positions",)
    IMMUTABLE_FIELDS: ClassVar[Tuple[str, ...]] = ("user_id", "deck_id")

    user_id: str
    deck_id: str
    spread_type: SpreadType
    intention: Optional[str] = None
    card_positions: List[CardPosition] = Field(default_factory=list)
    ai_interpretation: Optional[str] = None

    @field_validator('card_positions', mode='before')
    @classmethod
    def _none_to_empty(cls, value):
        return [] if value is None else value

    @model_validator(mode='after')
    def _fits_spread(self) -> "Reading":
        size = SPREAD_TYPES[self.spread_type]["positions"]
        if size is not None and len(self.card_positions) > size:
            raise ValueError(f"A {self.spread_type} spread holds at most {size} card(s), got {len(self.card_positions)}.")
        return self


class JournalEntry(SyncableRecord):
    TABLE: ClassVar[str] = TABLE_JOURNAL_ENTRIES
    OWNER_FIELD: ClassVar[Optional[str]] = "user_id"
    PARENT: ClassVar[Optional[Tuple[str, str]]] = (TABLE_READINGS, "reading_id")
    JSON_FIELDS: ClassVar[Tuple[str, ...]] = ("tags", "photo_urls")
    IMMUTABLE_FIELDS: ClassVar[Tuple[str, ...]] = ("user_id", "reading_id")

    user_id: str
    reading_id: str
    content: str
    mood: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    photo_urls: List[str] = Field(default_factory=list)

    @field_validator('tags', 'photo_urls', mode='before')
    @classmethod
    def _none_to_empty(cls, value):
        return [] if value is None else value


ENTITY_MODELS: Dict[str, Type[SyncableRecord]] = {
    model.TABLE: model for model in (Profile, Deck, Card, Reading, JournalEntry)
}


def model_for_table(table: str) -> Type[SyncableRecord]:
    try:
        return ENTITY_MODELS[table]
    except KeyError:
        raise ValueError(f"Unknown sync table '{table}'. Known tables: {sorted(ENTITY_MODELS)}") from None

#
# End of entities.py
#######################################################################################################################
