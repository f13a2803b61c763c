"""Episode storage: the repository interface and its two implementations.

``create_repository`` picks the implementation once at process start:
SQLite (via aiosqlite) when ``DATABASE_PATH`` is configured, otherwise a
process-wide in-memory store. The in-memory store is a non-durable fallback,
not a cache; it lives as long as the repository object and is never reset.
"""

import copy
import json
import logging
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional

import aiosqlite

from models.episode import (
    Character,
    Episode,
    EpisodeSeed,
    Page,
    PageStatus,
    PlannerCharacter,
    PlannerOutline,
    utc_now,
)
from services.errors import NotFoundError

logger = logging.getLogger(__name__)

PAGE_FIELDS = {"status", "image_url", "seed", "version", "error", "overlays"}


def _check_page_changes(changes: dict[str, Any]) -> None:
    unknown = set(changes) - PAGE_FIELDS
    if unknown:
        raise ValueError(f"Unknown page field(s): {', '.join(sorted(unknown))}")


class EpisodeRepository(ABC):
    """Durable or in-memory storage for episodes, pages and characters."""

    async def connect(self) -> None:
        """Open underlying resources."""

    async def close(self) -> None:
        """Release underlying resources."""

    @abstractmethod
    async def create_episode(self, episode: Episode) -> None:
        """Persist a new episode with its pages (characters go through ``upsert_characters``)."""

    @abstractmethod
    async def get_episode(self, episode_id: str) -> Optional[Episode]:
        """Read an episode with pages ordered by page number and its characters."""

    @abstractmethod
    async def get_page(self, page_id: str) -> Optional[Page]:
        """Read a single page."""

    @abstractmethod
    async def update_page(self, page_id: str, **changes: Any) -> Page:
        """Update status/image_url/seed/version/error/overlays of a page.

        Passing ``error=None`` clears the stored error.

        Raises:
            NotFoundError: If the page does not exist
        """

    @abstractmethod
    async def upsert_characters(
        self, episode_id: str, characters: list[PlannerCharacter]
    ) -> list[Character]:
        """Insert characters missing by (episode, asset filename); existing rows are kept."""

    @abstractmethod
    async def set_character_image(
        self, episode_id: str, character: PlannerCharacter, image_url: str
    ) -> Character:
        """Upsert a character keyed by (episode, asset filename) with its image URL."""

    @abstractmethod
    async def list_characters(self, episode_id: str) -> list[Character]:
        """Characters of an episode in insertion order."""

    @abstractmethod
    async def add_style_ref(self, episode_id: str, url: str) -> None:
        """Record an uploaded style-reference URL."""

    @abstractmethod
    async def list_style_refs(self, episode_id: str) -> list[str]:
        """Recorded style-reference URLs, oldest first."""


class InMemoryEpisodeRepository(EpisodeRepository):
    """Process-wide keyed storage. Returns copies so callers never share state."""

    def __init__(self):
        self._episodes: dict[str, Episode] = {}
        self._pages: dict[str, Page] = {}
        self._characters: dict[str, list[Character]] = {}
        self._style_refs: dict[str, list[str]] = {}

    async def create_episode(self, episode: Episode) -> None:
        stored = copy.deepcopy(episode)
        stored.characters = []
        self._episodes[stored.id] = stored
        self._characters.setdefault(stored.id, [])
        for page in stored.pages:
            self._pages[page.id] = page
        logger.debug(f"Created episode {episode.id} in memory")

    async def get_episode(self, episode_id: str) -> Optional[Episode]:
        stored = self._episodes.get(episode_id)
        if stored is None:
            return None
        episode = copy.deepcopy(stored)
        episode.pages.sort(key=lambda p: p.page_number)
        episode.characters = copy.deepcopy(self._characters.get(episode_id, []))
        return episode

    async def get_page(self, page_id: str) -> Optional[Page]:
        page = self._pages.get(page_id)
        return copy.deepcopy(page) if page else None

    async def update_page(self, page_id: str, **changes: Any) -> Page:
        _check_page_changes(changes)
        page = self._pages.get(page_id)
        if page is None:
            raise NotFoundError(f"Page {page_id} not found")
        for key, value in changes.items():
            setattr(page, key, copy.deepcopy(value))
        self._episodes[page.episode_id].updated_at = utc_now()
        return copy.deepcopy(page)

    async def upsert_characters(
        self, episode_id: str, characters: list[PlannerCharacter]
    ) -> list[Character]:
        roster = self._characters.setdefault(episode_id, [])
        known = {c.asset_filename for c in roster}
        for entry in characters:
            if entry.asset_filename in known:
                continue
            roster.append(
                Character(
                    id=str(uuid.uuid4()),
                    episode_id=episode_id,
                    name=entry.name,
                    description=entry.description,
                    asset_filename=entry.asset_filename,
                )
            )
            known.add(entry.asset_filename)
        return copy.deepcopy(roster)

    async def set_character_image(
        self, episode_id: str, character: PlannerCharacter, image_url: str
    ) -> Character:
        roster = self._characters.setdefault(episode_id, [])
        for existing in roster:
            if existing.asset_filename == character.asset_filename:
                existing.image_url = image_url
                existing.name = character.name
                existing.description = character.description
                return copy.deepcopy(existing)
        created = Character(
            id=str(uuid.uuid4()),
            episode_id=episode_id,
            name=character.name,
            description=character.description,
            asset_filename=character.asset_filename,
            image_url=image_url,
        )
        roster.append(created)
        return copy.deepcopy(created)

    async def list_characters(self, episode_id: str) -> list[Character]:
        return copy.deepcopy(self._characters.get(episode_id, []))

    async def add_style_ref(self, episode_id: str, url: str) -> None:
        self._style_refs.setdefault(episode_id, []).append(url)

    async def list_style_refs(self, episode_id: str) -> list[str]:
        return list(self._style_refs.get(episode_id, []))


class SQLiteEpisodeRepository(EpisodeRepository):
    """Async SQLite episode storage.

    Seeds, outlines and overlays are stored as JSON columns.
    """

    def __init__(self, db_path: str):
        """Initialize with database path.

        Args:
            db_path: Path to SQLite database file (or ":memory:"). Parent
                     directory will be created if it doesn't exist.
        """
        self.db_path = db_path
        self.db: aiosqlite.Connection | None = None

    async def connect(self) -> None:
        """Open the connection and create the schema."""
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self.db = await aiosqlite.connect(self.db_path)
        self.db.row_factory = aiosqlite.Row

        if self.db_path != ":memory:":
            # Enable WAL mode for better concurrent read performance
            await self.db.execute("PRAGMA journal_mode=WAL")

        await self.db.executescript("""
            CREATE TABLE IF NOT EXISTS episodes (
                id TEXT PRIMARY KEY,
                seed JSON NOT NULL,
                outline JSON,
                renderer_model TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS pages (
                id TEXT PRIMARY KEY,
                episode_id TEXT NOT NULL REFERENCES episodes(id) ON DELETE CASCADE,
                page_number INTEGER NOT NULL,
                status TEXT NOT NULL DEFAULT 'queued',
                image_url TEXT,
                seed INTEGER,
                version INTEGER NOT NULL DEFAULT 0,
                error TEXT,
                overlays JSON,
                UNIQUE (episode_id, page_number)
            );
            CREATE TABLE IF NOT EXISTS characters (
                id TEXT PRIMARY KEY,
                episode_id TEXT NOT NULL REFERENCES episodes(id) ON DELETE CASCADE,
                name TEXT NOT NULL,
                description TEXT,
                asset_filename TEXT NOT NULL,
                image_url TEXT,
                UNIQUE (episode_id, asset_filename)
            );
            CREATE TABLE IF NOT EXISTS style_refs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                episode_id TEXT NOT NULL REFERENCES episodes(id) ON DELETE CASCADE,
                url TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_pages_episode ON pages (episode_id, page_number);
        """)
        await self.db.commit()
        logger.info(f"Episode store connected: {self.db_path}")

    async def close(self) -> None:
        """Close database connection."""
        if self.db:
            await self.db.close()
            self.db = None
            logger.info("Episode store connection closed")

    def _conn(self) -> aiosqlite.Connection:
        if self.db is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self.db

    async def create_episode(self, episode: Episode) -> None:
        db = self._conn()
        await db.execute(
            "INSERT INTO episodes (id, seed, outline, renderer_model, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (
                episode.id,
                json.dumps(episode.seed.to_dict()),
                json.dumps(episode.outline.to_dict()) if episode.outline else None,
                episode.renderer_model,
                episode.created_at,
                episode.updated_at,
            ),
        )
        await db.executemany(
            "INSERT INTO pages (id, episode_id, page_number, status, version) VALUES (?, ?, ?, ?, ?)",
            [
                (p.id, episode.id, p.page_number, p.status.value, p.version)
                for p in episode.pages
            ],
        )
        await db.commit()
        logger.info(f"Created episode {episode.id} with {len(episode.pages)} pages")

    async def get_episode(self, episode_id: str) -> Optional[Episode]:
        db = self._conn()
        async with db.execute("SELECT * FROM episodes WHERE id = ?", (episode_id,)) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None

        async with db.execute(
            "SELECT * FROM pages WHERE episode_id = ? ORDER BY page_number", (episode_id,)
        ) as cursor:
            pages = [self._row_to_page(r) for r in await cursor.fetchall()]

        return Episode(
            id=row["id"],
            seed=EpisodeSeed.from_dict(json.loads(row["seed"])),
            outline=PlannerOutline.from_dict(json.loads(row["outline"])) if row["outline"] else None,
            pages=pages,
            characters=await self.list_characters(episode_id),
            renderer_model=row["renderer_model"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    async def get_page(self, page_id: str) -> Optional[Page]:
        db = self._conn()
        async with db.execute("SELECT * FROM pages WHERE id = ?", (page_id,)) as cursor:
            row = await cursor.fetchone()
        return self._row_to_page(row) if row else None

    async def update_page(self, page_id: str, **changes: Any) -> Page:
        _check_page_changes(changes)
        db = self._conn()
        page = await self.get_page(page_id)
        if page is None:
            raise NotFoundError(f"Page {page_id} not found")

        if changes:
            columns = []
            values: list[Any] = []
            for key, value in changes.items():
                if key == "status" and isinstance(value, PageStatus):
                    value = value.value
                elif key == "overlays":
                    value = json.dumps(value) if value is not None else None
                columns.append(f"{key} = ?")
                values.append(value)
            await db.execute(
                f"UPDATE pages SET {', '.join(columns)} WHERE id = ?", (*values, page_id)
            )
            await db.execute(
                "UPDATE episodes SET updated_at = ? WHERE id = ?", (utc_now(), page.episode_id)
            )
            await db.commit()
            logger.debug(f"Updated page {page_id}: {', '.join(changes)}")

        return await self.get_page(page_id)

    async def upsert_characters(
        self, episode_id: str, characters: list[PlannerCharacter]
    ) -> list[Character]:
        db = self._conn()
        await db.executemany(
            "INSERT OR IGNORE INTO characters (id, episode_id, name, description, asset_filename) "
            "VALUES (?, ?, ?, ?, ?)",
            [
                (str(uuid.uuid4()), episode_id, c.name, c.description, c.asset_filename)
                for c in characters
            ],
        )
        await db.commit()
        return await self.list_characters(episode_id)

    async def set_character_image(
        self, episode_id: str, character: PlannerCharacter, image_url: str
    ) -> Character:
        db = self._conn()
        await db.execute(
            """
            INSERT INTO characters (id, episode_id, name, description, asset_filename, image_url)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT (episode_id, asset_filename) DO UPDATE SET
                image_url = excluded.image_url,
                name = excluded.name,
                description = excluded.description
            """,
            (
                str(uuid.uuid4()),
                episode_id,
                character.name,
                character.description,
                character.asset_filename,
                image_url,
            ),
        )
        await db.commit()
        async with db.execute(
            "SELECT * FROM characters WHERE episode_id = ? AND asset_filename = ?",
            (episode_id, character.asset_filename),
        ) as cursor:
            row = await cursor.fetchone()
        return self._row_to_character(row)

    async def list_characters(self, episode_id: str) -> list[Character]:
        db = self._conn()
        async with db.execute(
            "SELECT * FROM characters WHERE episode_id = ? ORDER BY rowid", (episode_id,)
        ) as cursor:
            return [self._row_to_character(r) for r in await cursor.fetchall()]

    async def add_style_ref(self, episode_id: str, url: str) -> None:
        db = self._conn()
        await db.execute(
            "INSERT INTO style_refs (episode_id, url) VALUES (?, ?)", (episode_id, url)
        )
        await db.commit()

    async def list_style_refs(self, episode_id: str) -> list[str]:
        db = self._conn()
        async with db.execute(
            "SELECT url FROM style_refs WHERE episode_id = ? ORDER BY id", (episode_id,)
        ) as cursor:
            return [r["url"] for r in await cursor.fetchall()]

    def _row_to_page(self, row: aiosqlite.Row) -> Page:
        overlays = row["overlays"]
        return Page(
            id=row["id"],
            episode_id=row["episode_id"],
            page_number=row["page_number"],
            status=PageStatus(row["status"]),
            image_url=row["image_url"],
            seed=row["seed"],
            version=row["version"] or 0,
            error=row["error"],
            overlays=json.loads(overlays) if overlays is not None else None,
        )

    def _row_to_character(self, row: aiosqlite.Row) -> Character:
        return Character(
            id=row["id"],
            episode_id=row["episode_id"],
            name=row["name"],
            description=row["description"],
            asset_filename=row["asset_filename"],
            image_url=row["image_url"],
        )


def create_repository(config: dict) -> EpisodeRepository:
    """Select the repository implementation once, from configuration.

    Call ``connect()`` on the result before use.
    """
    database_path = config.get("database_path")
    if database_path:
        logger.info(f"Using SQLite episode store at {database_path}")
        return SQLiteEpisodeRepository(database_path)
    logger.warning("DATABASE_PATH not set - episodes are kept in memory and lost on restart")
    return InMemoryEpisodeRepository()
