# Constants.py
# Description: Constants for the oracle_cards sync core
#
# Imports
#
# 3rd-Party Imports
#
# Local Imports
#
########################################################################################################################
#
# Functions:

# --- Sync Tables ---
# Order matters: parents are pulled/applied/pushed before their children.
TABLE_PROFILES = "profiles"
TABLE_DECKS = "decks"
TABLE_CARDS = "cards"
TABLE_READINGS = "readings"
TABLE_JOURNAL_ENTRIES = "journal_entries"
SYNC_TABLES = [TABLE_PROFILES, TABLE_DECKS, TABLE_CARDS, TABLE_READINGS, TABLE_JOURNAL_ENTRIES]

# --- Delta endpoint operations ---
OP_INSERT = "INSERT"
OP_UPDATE = "UPDATE"
OP_DELETE = "DELETE"

# --- Local change operations (emitted to change listeners) ---
CHANGE_CREATE = "create"
CHANGE_UPDATE = "update"
CHANGE_DELETE = "delete"

# --- Subscription tiers ---
DEFAULT_SUBSCRIPTION_TIER = "free"

# --- Spreads ---
# Number of positions per spread; 'custom' has no fixed size.
SPREAD_TYPES = {
    "single": {"name": "Single Card", "positions": 1},
    "three-card": {"name": "Three Card Spread", "positions": 3},
    "five-card": {"name": "Five Card Cross", "positions": 5},
    "celtic-cross": {"name": "Celtic Cross", "positions": 10},
    "custom": {"name": "Custom Spread", "positions": None},
}

# --- Sync failure kinds ---
FAILURE_TRANSPORT = "transport"
FAILURE_REJECTED = "rejected"

#
# End of Constants.py
########################################################################################################################
