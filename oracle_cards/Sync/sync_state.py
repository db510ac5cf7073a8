# sync_state.py
# Description: Persistent pull watermark for the delta sync engine.
#
# Imports
import json
import os
from datetime import datetime
from pathlib import Path
from typing import Optional, Union
#
# Third-Party Imports
from loguru import logger
#
# Local Imports
from oracle_cards.DB.entities import ensure_utc
#
#######################################################################################################################
#
# Functions:

class SyncStateStore:
    """
    Keeps the pull watermark in a small JSON file next to the user's database.

    A missing or unreadable file means "never pulled": the next cycle does a full pull.
    """

    def __init__(self, state_file: Union[str, Path]):
        self.state_file = Path(state_file)
        self.last_pull_at: Optional[datetime] = None
        self._load_sync_state()

    def _load_sync_state(self):
        """Loads the watermark from the state file."""
        try:
            if self.state_file.exists():
                with open(self.state_file, 'r', encoding='utf-8') as f:
                    state = json.load(f)
                raw = state.get('last_pull_at')
                self.last_pull_at = ensure_utc(datetime.fromisoformat(raw)) if raw else None
                logger.debug(f"Loaded sync state from {self.state_file}: last_pull_at={raw}")
            else:
                logger.info(f"State file {self.state_file} not found, starting from scratch.")
        except (json.JSONDecodeError, OSError, ValueError, AttributeError) as e:
            logger.error(f"Error loading sync state from {self.state_file}: {e}. Starting from scratch.")
            self.last_pull_at = None

    def _save_sync_state(self):
        """Writes the watermark atomically (temp file + replace)."""
        state = {'last_pull_at': self.last_pull_at.isoformat() if self.last_pull_at else None}
        try:
            self.state_file.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.state_file.with_suffix(self.state_file.suffix + '.tmp')
            with open(tmp_path, 'w', encoding='utf-8') as f:
                json.dump(state, f, indent=4)
            os.replace(tmp_path, self.state_file)
            logger.debug(f"Saved sync state to {self.state_file}: {state}")
        except OSError as e:
            logger.error(f"Error saving sync state to {self.state_file}: {e}")

    def advance(self, watermark: datetime):
        """Moves the watermark forward. Never moves it backwards."""
        watermark = ensure_utc(watermark)
        if self.last_pull_at is not None and watermark <= self.last_pull_at:
            return
        self.last_pull_at = watermark
        self._save_sync_state()

    def reset(self):
        self.last_pull_at = None
        self._save_sync_state()

#
# End of sync_state.py
#######################################################################################################################
