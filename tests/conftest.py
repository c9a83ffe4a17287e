"""
Pytest fixtures for the initiative tracker.

Provides a throwaway SQLite store, a Flask test client, and in-memory
stand-ins for the character/encounter store.
"""

import pytest

import app as tracker
import db_utils


class MemoryStore:
    """Dict-backed store with the same call surface the turn order uses."""

    def __init__(self, characters=None, encounters=None, memberships=None):
        self.characters = {c["id"]: dict(c) for c in (characters or [])}
        self.encounters = list(encounters or [])
        self.memberships = {k: list(v) for k, v in (memberships or {}).items()}
        self.created = []
        self.updated = []
        self._next_id = max(self.characters, default=0) + 1

    def list_encounters(self, owner_id=None):
        return [e for e in self.encounters if not owner_id or e.get("owner_id") == owner_id]

    def list_characters(self, encounter_id=None, owner_id=None):
        records = list(self.characters.values())
        if encounter_id is not None:
            members = self.memberships.get(encounter_id, [])
            records = [c for c in records if c["id"] in members]
        if owner_id:
            records = [c for c in records if c.get("owner_id") == owner_id]
        return [dict(c) for c in sorted(records, key=lambda c: c["id"])]

    def create_character(self, record):
        character_id = self._next_id
        self._next_id += 1
        self.characters[character_id] = dict(record, id=character_id)
        self.created.append(dict(record))
        return character_id

    def update_character(self, record):
        if record["id"] not in self.characters:
            return 0
        self.characters[record["id"]] = dict(record)
        self.updated.append(dict(record))
        return 1


class FailingStore(MemoryStore):
    """Store whose every call raises, to check nothing half-applies."""

    def list_encounters(self, owner_id=None):
        raise RuntimeError("store offline")

    def list_characters(self, encounter_id=None, owner_id=None):
        raise RuntimeError("store offline")

    def create_character(self, record):
        raise RuntimeError("store offline")

    def update_character(self, record):
        raise RuntimeError("store offline")


def make_character(character_id, name, initiative=10, **overrides):
    record = {
        "id": character_id,
        "name": name,
        "armor_class": 12,
        "max_hp": 20,
        "current_hp": 20,
        "initiative": initiative,
        "is_active": False,
        "owner_id": None,
    }
    record.update(overrides)
    return record


@pytest.fixture
def memory_store():
    """Store with three combatants in encounter 1."""
    return MemoryStore(
        characters=[
            make_character(1, "Aria", initiative=15),
            make_character(2, "Borin", initiative=20),
            make_character(3, "Cask", initiative=10),
        ],
        encounters=[{"id": 1, "name": "Goblin Ambush", "owner_id": None}],
        memberships={1: [1, 2, 3]},
    )


@pytest.fixture
def database(tmp_path, monkeypatch):
    """Fresh SQLite database with all tables created."""
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{(tmp_path / 'tracker.db').as_posix()}")
    db_utils.reset_engine()
    db_utils.create_tables()
    yield db_utils
    db_utils.reset_engine()


@pytest.fixture
def client(database):
    """Flask test client over the temporary database."""
    tracker.app.config.update(TESTING=True, SECRET_KEY="test-secret")
    tracker.turn_orders.clear()
    with tracker.app.test_client() as test_client:
        yield test_client
    tracker.turn_orders.clear()


@pytest.fixture
def seed_character(database):
    """Insert a character row and return its id."""

    def _seed(name, initiative=10, armor_class=12, max_hp=20, current_hp=None, owner_id=None):
        return database.create_character(
            {
                "name": name,
                "armor_class": armor_class,
                "max_hp": max_hp,
                "current_hp": max_hp if current_hp is None else current_hp,
                "initiative": initiative,
                "owner_id": owner_id,
            }
        )

    return _seed


@pytest.fixture
def login(client):
    """Put a Discord identity into the client's session."""

    def _login(discord_id="1001", username="gm"):
        with client.session_transaction() as sess:
            sess["discord_id"] = discord_id
            sess["discord_user"] = username
        return discord_id

    return _login
