"""Database utility helpers for the initiative tracker's relational store."""

from __future__ import annotations

import os
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    false,
    func,
    text,
)
from sqlalchemy.engine import Engine

load_dotenv()

_ENGINE: Optional[Engine] = None

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("discord_id", String(64), nullable=False, unique=True),
    Column("username", String(255), nullable=False),
    Column("discriminator", String(16)),
    Column("avatar", String(255)),
)

characters = Table(
    "characters",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False),
    Column("armor_class", Integer, nullable=False, server_default=text("0")),
    Column("max_hp", Integer, nullable=False, server_default=text("0")),
    Column("current_hp", Integer, nullable=False, server_default=text("0")),
    Column("initiative", Integer, nullable=False, server_default=text("0")),
    Column("is_active", Boolean, nullable=False, server_default=false()),
    Column("owner_id", String(64), nullable=True, index=True),
)

encounters = Table(
    "encounters",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False),
    Column("owner_id", String(64), nullable=True, index=True),
    Column("description", Text),
    Column("created_at", DateTime, server_default=func.now()),
    Column("updated_at", DateTime, server_default=func.now()),
    Column("encounter_type", String(32), server_default=text("'combat'")),
    Column("campaign_id", Integer, nullable=True),
)

encounter_characters = Table(
    "encounter_characters",
    metadata,
    Column("encounter_id", Integer, ForeignKey("encounters.id", ondelete="CASCADE"), primary_key=True),
    Column("character_id", Integer, ForeignKey("characters.id", ondelete="CASCADE"), primary_key=True),
)


def get_database_url() -> str:
    """Return DATABASE_URL, or assemble a MariaDB URL from the DB_* variables."""

    url = os.environ.get("DATABASE_URL")
    if url:
        return url

    host = os.environ.get("DB_HOST")
    port = os.environ.get("DB_PORT", "3306")
    name = os.environ.get("DB_NAME")
    user = os.environ.get("DB_USER")
    password = os.environ.get("DB_PASSWORD")

    if not all([host, name, user, password]):
        raise RuntimeError(
            "Database credentials are not fully configured. "
            "Set DATABASE_URL, or DB_HOST, DB_PORT, DB_NAME, DB_USER, and DB_PASSWORD in the environment/.env file."
        )

    return f"mysql+pymysql://{user}:{password}@{host}:{port}/{name}"


def get_engine() -> Engine:
    """Create (or return the cached) SQLAlchemy engine."""

    global _ENGINE
    if _ENGINE is not None:
        return _ENGINE

    url = get_database_url()
    connect_args: Dict[str, Any] = {}
    if url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}

    _ENGINE = create_engine(url, pool_pre_ping=True, future=True, connect_args=connect_args)
    return _ENGINE


def reset_engine() -> None:
    """Dispose of the cached engine so the next call re-reads the configuration."""

    global _ENGINE
    if _ENGINE is not None:
        _ENGINE.dispose()
    _ENGINE = None


def create_tables() -> None:
    metadata.create_all(get_engine())


def fetch_one(query: str, **params: Any) -> Optional[Dict[str, Any]]:
    with get_engine().connect() as conn:
        row = conn.execute(text(query), params).mappings().fetchone()
    return dict(row) if row else None


def fetch_all(query: str, **params: Any) -> List[Dict[str, Any]]:
    with get_engine().connect() as conn:
        rows = conn.execute(text(query), params).mappings().all()
    return [dict(row) for row in rows]


def insert_and_return_id(query: str, **params: Any) -> int:
    engine = get_engine()
    with engine.begin() as conn:
        result = conn.execute(text(query), params)
        inserted = result.lastrowid
    return int(inserted or 0)


def execute(query: str, **params: Any) -> int:
    with get_engine().begin() as conn:
        result = conn.execute(text(query), params)
        return int(result.rowcount or 0)


# --- Character helpers --------------------------------------------------

CHARACTER_COLUMNS = "c.id, c.name, c.armor_class, c.max_hp, c.current_hp, c.initiative, c.is_active, c.owner_id"


def normalize_character_record(record: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not record:
        return None
    owner_id = record.get("owner_id")
    return {
        "id": int(record["id"]),
        "name": record.get("name") or "",
        "armor_class": int(record.get("armor_class") or 0),
        "max_hp": int(record.get("max_hp") or 0),
        "current_hp": int(record.get("current_hp") or 0),
        "initiative": int(record.get("initiative") or 0),
        "is_active": bool(record.get("is_active")),
        "owner_id": str(owner_id) if owner_id is not None else None,
    }


def list_characters(encounter_id: Optional[int] = None, owner_id: Optional[str] = None) -> List[Dict[str, Any]]:
    """List characters, optionally restricted to an encounter's members and/or an owner."""

    query = f"SELECT {CHARACTER_COLUMNS} FROM characters c"
    clauses = []
    params: Dict[str, Any] = {}
    if encounter_id is not None:
        query += " JOIN encounter_characters ec ON ec.character_id = c.id"
        clauses.append("ec.encounter_id = :encounter_id")
        params["encounter_id"] = encounter_id
    if owner_id:
        clauses.append("c.owner_id = :owner_id")
        params["owner_id"] = owner_id
    if clauses:
        query += " WHERE " + " AND ".join(clauses)
    query += " ORDER BY c.id"
    return [normalize_character_record(row) for row in fetch_all(query, **params)]


def get_character(character_id: int) -> Optional[Dict[str, Any]]:
    record = fetch_one(
        f"SELECT {CHARACTER_COLUMNS} FROM characters c WHERE c.id = :character_id",
        character_id=character_id,
    )
    return normalize_character_record(record)


def create_character(record: Dict[str, Any]) -> int:
    return insert_and_return_id(
        """
        INSERT INTO characters (
            name, armor_class, max_hp, current_hp, initiative, is_active, owner_id
        ) VALUES (
            :name, :armor_class, :max_hp, :current_hp, :initiative, :is_active, :owner_id
        )
        """,
        name=record["name"],
        armor_class=int(record.get("armor_class") or 0),
        max_hp=int(record.get("max_hp") or 0),
        current_hp=int(record.get("current_hp") or 0),
        initiative=int(record.get("initiative") or 0),
        is_active=bool(record.get("is_active")),
        owner_id=record.get("owner_id"),
    )


def update_character(record: Dict[str, Any]) -> int:
    return execute(
        """
        UPDATE characters
        SET name = :name, armor_class = :armor_class, max_hp = :max_hp,
            current_hp = :current_hp, initiative = :initiative, is_active = :is_active
        WHERE id = :character_id
        """,
        name=record["name"],
        armor_class=int(record.get("armor_class") or 0),
        max_hp=int(record.get("max_hp") or 0),
        current_hp=int(record.get("current_hp") or 0),
        initiative=int(record.get("initiative") or 0),
        is_active=bool(record.get("is_active")),
        character_id=int(record["id"]),
    )


def delete_character(character_id: int) -> bool:
    execute(
        "DELETE FROM encounter_characters WHERE character_id = :character_id",
        character_id=character_id,
    )
    affected = execute("DELETE FROM characters WHERE id = :character_id", character_id=character_id)
    return affected > 0


# --- Encounter helpers --------------------------------------------------

ENCOUNTER_COLUMNS = "id, name, owner_id, description, created_at, updated_at, encounter_type, campaign_id"


def normalize_encounter_record(record: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not record:
        return None
    normalized = dict(record)
    normalized["id"] = int(normalized["id"])
    if normalized.get("owner_id") is not None:
        normalized["owner_id"] = str(normalized["owner_id"])
    normalized["description"] = normalized.get("description") or ""
    return normalized


def list_encounters(owner_id: Optional[str] = None) -> List[Dict[str, Any]]:
    if owner_id:
        rows = fetch_all(
            f"SELECT {ENCOUNTER_COLUMNS} FROM encounters WHERE owner_id = :owner_id ORDER BY id",
            owner_id=owner_id,
        )
    else:
        rows = fetch_all(f"SELECT {ENCOUNTER_COLUMNS} FROM encounters ORDER BY id")
    return [normalize_encounter_record(row) for row in rows]


def get_encounter(encounter_id: int) -> Optional[Dict[str, Any]]:
    record = fetch_one(
        f"SELECT {ENCOUNTER_COLUMNS} FROM encounters WHERE id = :encounter_id",
        encounter_id=encounter_id,
    )
    return normalize_encounter_record(record)


def create_encounter(
    name: str,
    owner_id: Optional[str],
    description: str = "",
    encounter_type: str = "combat",
    campaign_id: Optional[int] = None,
) -> int:
    return insert_and_return_id(
        """
        INSERT INTO encounters (name, owner_id, description, encounter_type, campaign_id)
        VALUES (:name, :owner_id, :description, :encounter_type, :campaign_id)
        """,
        name=name,
        owner_id=owner_id,
        description=description,
        encounter_type=encounter_type,
        campaign_id=campaign_id,
    )


def list_encounter_character_ids(encounter_id: int) -> List[int]:
    rows = fetch_all(
        "SELECT character_id FROM encounter_characters WHERE encounter_id = :encounter_id ORDER BY character_id",
        encounter_id=encounter_id,
    )
    return [int(row["character_id"]) for row in rows]


def add_character_to_encounter(encounter_id: int, character_id: int) -> bool:
    """Add a membership row. Returns False when the character was already a member."""

    existing = fetch_one(
        """
        SELECT 1 AS found FROM encounter_characters
        WHERE encounter_id = :encounter_id AND character_id = :character_id
        """,
        encounter_id=encounter_id,
        character_id=character_id,
    )
    if existing:
        return False
    execute(
        "INSERT INTO encounter_characters (encounter_id, character_id) VALUES (:encounter_id, :character_id)",
        encounter_id=encounter_id,
        character_id=character_id,
    )
    execute(
        "UPDATE encounters SET updated_at = CURRENT_TIMESTAMP WHERE id = :encounter_id",
        encounter_id=encounter_id,
    )
    return True


def remove_character_from_encounter(encounter_id: int, character_id: int) -> bool:
    affected = execute(
        "DELETE FROM encounter_characters WHERE encounter_id = :encounter_id AND character_id = :character_id",
        encounter_id=encounter_id,
        character_id=character_id,
    )
    if affected:
        execute(
            "UPDATE encounters SET updated_at = CURRENT_TIMESTAMP WHERE id = :encounter_id",
            encounter_id=encounter_id,
        )
    return affected > 0


# --- User helpers -------------------------------------------------------


def get_user_by_discord_id(discord_id: str) -> Optional[Dict[str, Any]]:
    return fetch_one(
        "SELECT id, discord_id, username, discriminator, avatar FROM users WHERE discord_id = :discord_id",
        discord_id=discord_id,
    )


def upsert_user(discord_id: str, username: str, discriminator: Optional[str] = None, avatar: Optional[str] = None) -> int:
    """Insert the Discord user, or refresh the stored profile fields. Returns the row id."""

    existing = get_user_by_discord_id(discord_id)
    if existing:
        execute(
            """
            UPDATE users SET username = :username, discriminator = :discriminator, avatar = :avatar
            WHERE discord_id = :discord_id
            """,
            username=username,
            discriminator=discriminator,
            avatar=avatar,
            discord_id=discord_id,
        )
        return int(existing["id"])
    return insert_and_return_id(
        """
        INSERT INTO users (discord_id, username, discriminator, avatar)
        VALUES (:discord_id, :username, :discriminator, :avatar)
        """,
        discord_id=discord_id,
        username=username,
        discriminator=discriminator,
        avatar=avatar,
    )
