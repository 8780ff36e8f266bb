"""
Durable storage for the three collections: users, conversations, last_seen.

Every save rewrites a whole collection. Two adapters share one interface:

  - JsonFilePersistence: one JSON file per collection under DATA_DIR.
  - PostgresPersistence: one JSONB row per collection in a `collections` table.

Adapters raise StorageError; deciding whether to carry on is the caller's job.
"""
from __future__ import annotations

import os
import json
import logging
import tempfile
from enum import Enum
from typing import Any, Dict, Optional

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from .config import Settings
from .errors import StorageError
from .models import now_ts

LOGGER = logging.getLogger("pairchat.persistence")


class Collection(str, Enum):
    USERS = "users"
    CONVERSATIONS = "conversations"
    LAST_SEEN = "last_seen"

    def empty(self) -> Any:
        return [] if self is Collection.USERS else {}


class Persistence:
    def load(self, collection: Collection) -> Optional[Any]:
        """Return the stored payload, or None if the collection was never saved."""
        raise NotImplementedError

    def save(self, collection: Collection, payload: Any) -> None:
        raise NotImplementedError


class JsonFilePersistence(Persistence):
    def __init__(self, data_dir: str):
        self.data_dir = data_dir

    def path_for(self, collection: Collection) -> str:
        return os.path.join(self.data_dir, f"{collection.value}.json")

    def load(self, collection: Collection) -> Optional[Any]:
        path = self.path_for(collection)
        if not os.path.isfile(path):
            return None
        try:
            with open(path, "r", encoding="utf-8") as fh:
                return json.load(fh)
        except (OSError, ValueError) as e:
            raise StorageError(f"Failed to read {path}: {e}")

    def save(self, collection: Collection, payload: Any) -> None:
        path = self.path_for(collection)
        try:
            os.makedirs(self.data_dir, exist_ok=True)
            # write-then-rename so a crash never leaves a truncated file behind
            fd, tmp_path = tempfile.mkstemp(prefix=f".{collection.value}.", dir=self.data_dir)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    json.dump(payload, fh, indent=2, ensure_ascii=False)
                os.replace(tmp_path, path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
        except (OSError, TypeError, ValueError) as e:
            raise StorageError(f"Failed to write {path}: {e}")


class PostgresPersistence(Persistence):
    def __init__(self, database_url: str):
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for PostgresPersistence")
        self.database_url = database_url
        self._initialized = False

    def db(self):
        # new connection per action (simple + safe)
        return psycopg.connect(self.database_url, row_factory=dict_row)

    def init_db(self) -> None:
        try:
            with self.db() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        """
                        CREATE TABLE IF NOT EXISTS collections (
                            name TEXT PRIMARY KEY,
                            payload JSONB NOT NULL,
                            updated_at BIGINT NOT NULL
                        );
                        """
                    )
                conn.commit()
        except psycopg.Error as e:
            raise StorageError(f"Failed to initialize collections table: {e}")
        self._initialized = True

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            self.init_db()

    def load(self, collection: Collection) -> Optional[Any]:
        self._ensure_initialized()
        try:
            with self.db() as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT payload FROM collections WHERE name=%s", (collection.value,))
                    row = cur.fetchone()
        except psycopg.Error as e:
            raise StorageError(f"Failed to load {collection.value}: {e}")
        return row["payload"] if row else None

    def save(self, collection: Collection, payload: Any) -> None:
        self._ensure_initialized()
        try:
            with self.db() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        """
                        INSERT INTO collections(name, payload, updated_at)
                        VALUES (%s,%s,%s)
                        ON CONFLICT (name)
                        DO UPDATE SET payload=EXCLUDED.payload, updated_at=EXCLUDED.updated_at
                        """,
                        (collection.value, Jsonb(payload), now_ts()),
                    )
                conn.commit()
        except psycopg.Error as e:
            raise StorageError(f"Failed to save {collection.value}: {e}")


def build_persistence(settings: Settings) -> Persistence:
    if settings.database_url:
        LOGGER.info("Using PostgreSQL persistence")
        return PostgresPersistence(settings.database_url)
    LOGGER.info("Using JSON file persistence in %s", os.path.abspath(settings.data_dir))
    return JsonFilePersistence(settings.data_dir)


def load_or_empty(persistence: Persistence, collection: Collection) -> Any:
    """Load a collection; on failure log and fall back to an empty one."""
    try:
        payload = persistence.load(collection)
    except StorageError as e:
        LOGGER.error("Error loading %s, starting empty: %s", collection.value, e)
        return collection.empty()
    if payload is None:
        return collection.empty()
    return payload


def save_logged(persistence: Persistence, collection: Collection, payload: Any) -> bool:
    """Save a collection; on failure log and keep going with in-memory state."""
    try:
        persistence.save(collection, payload)
    except StorageError as e:
        LOGGER.error("Error saving %s: %s", collection.value, e)
        return False
    return True


def dump_map(records: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value.to_wire() for key, value in records.items()}
