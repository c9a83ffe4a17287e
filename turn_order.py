"""In-memory turn order for the encounter a viewer is currently running.

Each viewer (a Discord user, or an anonymous browser session) gets its own
``TurnOrderSession`` from the ``SessionRegistry``. A session holds the working
sequence of character records for the selected encounter; its order is the
turn order. Every operation takes the session lock, so two requests from the
same viewer never interleave inside a mutation, and two viewers never share
state.

The ``store`` passed to ``load``/``select_encounter``/``upsert`` is anything
exposing ``list_encounters``, ``list_characters``, ``create_character`` and
``update_character`` with the signatures in ``db_utils``.
"""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

NEW_CHARACTER_ID = 0
DEFAULT_MAX_SESSIONS = 1000


class TurnOrderError(Exception):
    """A turn-order operation was rejected; nothing was changed."""


class InvalidIndex(TurnOrderError, IndexError):
    pass


class InvalidHitPoints(TurnOrderError, ValueError):
    pass


class CharacterNotFound(TurnOrderError, LookupError):
    pass


def is_new_character(record: Dict[str, Any]) -> bool:
    character_id = record.get("id")
    return character_id is None or int(character_id) <= NEW_CHARACTER_ID


def validate_hit_points(record: Dict[str, Any]) -> None:
    current_hp = int(record.get("current_hp") or 0)
    max_hp = int(record.get("max_hp") or 0)
    if current_hp < 0 or current_hp > max_hp:
        raise InvalidHitPoints(f"Invalid HP value: current HP {current_hp} must be between 0 and {max_hp}")


class TurnOrderSession:
    def __init__(self, owner_id: Optional[str] = None):
        self.owner_id = owner_id
        self.selected_encounter_id: Optional[int] = None
        self.loaded = False
        self._characters: List[Dict[str, Any]] = []
        self._lock = threading.RLock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._characters)

    # --- Loading ---

    def load(self, store) -> None:
        """Replace the working sequence from the store.

        When no encounter is selected yet, the first encounter visible to the
        owner becomes the selection. Store errors propagate before anything
        is assigned.
        """

        with self._lock:
            encounter_id = self.selected_encounter_id
            if encounter_id is None:
                encounters = store.list_encounters(owner_id=self.owner_id)
                if encounters:
                    encounter_id = encounters[0]["id"]
            records = store.list_characters(encounter_id=encounter_id, owner_id=self.owner_id)
            self._characters = [dict(record) for record in records]
            self.selected_encounter_id = encounter_id
            self.loaded = True
            logger.debug(
                "Loaded %d characters for encounter %s (owner %s)",
                len(self._characters),
                encounter_id,
                self.owner_id,
            )

    def select_encounter(self, store, encounter_id: int) -> None:
        with self._lock:
            previous = self.selected_encounter_id
            self.selected_encounter_id = encounter_id
            try:
                self.load(store)
            except Exception:
                self.selected_encounter_id = previous
                raise

    # --- Turn tracking ---

    def _active_index(self) -> Optional[int]:
        for index, character in enumerate(self._characters):
            if character.get("is_active"):
                return index
        return None

    def advance(self) -> Optional[Dict[str, Any]]:
        """Hand the turn to the next combatant and return it.

        With nobody active the first combatant goes. An empty sequence is a
        no-op and returns None.
        """

        with self._lock:
            if not self._characters:
                logger.debug("Advance requested on an empty turn order")
                return None
            current = self._active_index()
            next_index = 0 if current is None else (current + 1) % len(self._characters)
            for index, character in enumerate(self._characters):
                character["is_active"] = index == next_index
            return dict(self._characters[next_index])

    def select_active(self, character_id: int) -> Optional[Dict[str, Any]]:
        with self._lock:
            selected = None
            for character in self._characters:
                character["is_active"] = character["id"] == character_id
                if character["is_active"]:
                    selected = dict(character)
            return selected

    # --- Ordering ---

    def sort_by_initiative(self) -> None:
        # list.sort is stable, including with reverse=True
        with self._lock:
            self._characters.sort(key=lambda character: character["initiative"], reverse=True)

    def reorder(self, old_index: int, new_index: int) -> None:
        with self._lock:
            size = len(self._characters)
            for index in (old_index, new_index):
                if not 0 <= index < size:
                    raise InvalidIndex(f"Index {index} is out of range for {size} characters")
            character = self._characters.pop(old_index)
            self._characters.insert(new_index, character)

    # --- Persistence ---

    def upsert(self, store, record: Dict[str, Any]) -> Dict[str, Any]:
        """Create or update a character and reflect it in the working sequence."""

        validate_hit_points(record)
        with self._lock:
            if is_new_character(record):
                saved = dict(record)
                saved["is_active"] = bool(saved.get("is_active", False))
                saved["id"] = store.create_character(saved)
                self._characters.append(saved)
                return dict(saved)

            saved = dict(record)
            position = None
            for index, existing in enumerate(self._characters):
                if existing["id"] == saved["id"]:
                    position = index
                    break
            if "is_active" not in saved:
                saved["is_active"] = bool(position is not None and self._characters[position].get("is_active"))
            if not store.update_character(saved):
                raise CharacterNotFound(f"Character {saved['id']} not found")
            if position is not None:
                self._characters[position] = saved
            return dict(saved)

    def remove(self, character_id: int) -> bool:
        with self._lock:
            before = len(self._characters)
            self._characters = [c for c in self._characters if c["id"] != character_id]
            return len(self._characters) != before

    def snapshot(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [dict(character) for character in self._characters]


class SessionRegistry:
    """Turn-order sessions keyed by viewer.

    At most ``max_sessions`` are kept; the least recently used viewer is
    evicted first and simply reloads from the store on its next request.
    """

    def __init__(self, max_sessions: int = DEFAULT_MAX_SESSIONS):
        if max_sessions < 1:
            raise ValueError("max_sessions must be at least 1")
        self.max_sessions = max_sessions
        self._sessions: "OrderedDict[str, TurnOrderSession]" = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._sessions

    def get(self, key: str, owner_id: Optional[str] = None) -> TurnOrderSession:
        with self._lock:
            session = self._sessions.get(key)
            if session is None or session.owner_id != owner_id:
                session = TurnOrderSession(owner_id=owner_id)
                self._sessions[key] = session
            self._sessions.move_to_end(key)
            while len(self._sessions) > self.max_sessions:
                evicted, _ = self._sessions.popitem(last=False)
                logger.debug("Evicted idle turn order %s", evicted)
            return session

    def discard(self, key: str) -> None:
        with self._lock:
            self._sessions.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._sessions.clear()
