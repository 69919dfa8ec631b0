#!/usr/bin/env python3
"""Radar: a terminal catalog of technology-radar blips and ADRs."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import sqlite3
import subprocess
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Callable, Optional

import typer
from dotenv import load_dotenv
from prompt_toolkit import Application
from prompt_toolkit.application.current import get_app
from prompt_toolkit.key_binding import KeyBindings
from prompt_toolkit.keys import Keys
from prompt_toolkit.layout.containers import (
    DynamicContainer, HSplit, VSplit, Window, WindowAlign,
)
from prompt_toolkit.layout.controls import FormattedTextControl
from prompt_toolkit.layout.layout import Layout
from prompt_toolkit.styles import Style as PtStyle
from typing_extensions import Annotated

logger = logging.getLogger("radar")

# ════════════════════════════════════════════════════════════════════════
#  Vocabulary
# ════════════════════════════════════════════════════════════════════════


class _Choice(Enum):
    """Closed option set stored as lowercase text."""

    @classmethod
    def parse(cls, value):
        if value is None:
            return None
        needle = str(value).strip().lower()
        for member in cls:
            if member.value == needle:
                return member
        return None

    @classmethod
    def from_index(cls, index: int):
        members = list(cls)
        if 0 <= index < len(members):
            return members[index]
        return None

    @classmethod
    def options(cls) -> list:
        return list(cls)

    def index(self) -> int:
        return list(type(self)).index(self)

    def as_str(self) -> str:
        return self.value

    def label(self) -> str:
        return self.value.capitalize()

    def next(self):
        members = list(type(self))
        return members[wrap_increment(self.index(), len(members))]

    def prev(self):
        members = list(type(self))
        return members[wrap_decrement(self.index(), len(members))]


class Ring(_Choice):
    HOLD = "hold"
    ASSESS = "assess"
    TRIAL = "trial"
    ADOPT = "adopt"


class Quadrant(_Choice):
    PLATFORMS = "platforms"
    LANGUAGES = "languages"
    TOOLS = "tools"
    TECHNIQUES = "techniques"


class AdrStatus(_Choice):
    PROPOSED = "proposed"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    DEPRECATED = "deprecated"
    SUPERSEDED = "superseded"


class EntryKind(_Choice):
    ADR = "adr"
    BLIP = "blip"

    def label(self) -> str:
        return "ADR" if self is EntryKind.ADR else "Blip"


class Screen(Enum):
    MAIN = "main"
    VIEW_BLIPS = "view_blips"
    VIEW_ADRS = "view_adrs"
    BLIP_ACTIONS = "blip_actions"
    BLIP_DETAILS = "blip_details"
    EDIT_BLIP = "edit_blip"
    ADR_ACTIONS = "adr_actions"
    ADR_DETAILS = "adr_details"
    EDIT_ADR = "edit_adr"


class WizardState(Enum):
    WAITING_FOR_COMMAND = "waiting_for_command"
    ENTERING_NAME = "entering_name"
    CHOOSING_QUADRANT = "choosing_quadrant"
    CHOOSING_RING = "choosing_ring"
    CHOOSING_ADR_STATUS = "choosing_adr_status"
    GENERATING = "generating"
    COMPLETED = "completed"


class GenerationState(Enum):
    IDLE = "idle"
    GENERATING = "generating"
    SUCCESS = "success"
    ERROR = "error"


def wrap_increment(index: int, length: int) -> int:
    if length <= 0:
        return 0
    return (index + 1) % length


def wrap_decrement(index: int, length: int) -> int:
    if length <= 0:
        return 0
    return length - 1 if index <= 0 else index - 1


def clamp(index: int, length: int) -> int:
    if length <= 0:
        return 0
    return max(0, min(index, length - 1))


# ════════════════════════════════════════════════════════════════════════
#  Data Models
# ════════════════════════════════════════════════════════════════════════


@dataclass
class Blip:
    """A technology-radar entry as stored in the catalog."""
    id: int
    name: str
    ring: Optional[Ring] = None
    quadrant: Optional[Quadrant] = None
    tag: str = ""
    description: str = ""
    created: str = ""
    has_adr: bool = False
    adr_id: Optional[int] = None


@dataclass
class Adr:
    """An architecture decision record. Empty blip_name means unlinked."""
    id: int
    title: str
    blip_name: str = ""
    status: AdrStatus = AdrStatus.PROPOSED
    timestamp: str = ""


@dataclass
class BlipUpdate:
    """Partial blip update; None keeps the stored value."""
    name: Optional[str] = None
    ring: Optional[Ring] = None
    quadrant: Optional[Quadrant] = None
    tag: Optional[str] = None
    description: Optional[str] = None
    adr_id: Optional[int] = None


@dataclass
class AdrUpdate:
    """Partial ADR update; None keeps the stored value."""
    title: Optional[str] = None
    blip_name: Optional[str] = None
    status: Optional[AdrStatus] = None
    timestamp: Optional[str] = None


@dataclass
class CatalogStats:
    total_blips: int = 0
    total_adrs: int = 0
    by_ring: dict[str, int] = field(default_factory=dict)
    by_quadrant: dict[str, int] = field(default_factory=dict)
    recent: list[Blip] = field(default_factory=list)

    @property
    def adr_coverage(self) -> Optional[float]:
        if not self.total_blips:
            return None
        return self.total_adrs / self.total_blips * 100.0

    def as_dict(self) -> dict:
        return {
            "total_blips": self.total_blips,
            "total_adrs": self.total_adrs,
            "adr_coverage": self.adr_coverage,
            "by_quadrant": self.by_quadrant,
            "by_ring": self.by_ring,
            "recent_blips": [
                {
                    "name": b.name,
                    "quadrant": b.quadrant.as_str() if b.quadrant else "(none)",
                    "ring": b.ring.as_str() if b.ring else "(none)",
                    "created": b.created,
                }
                for b in self.recent
            ],
        }


# ════════════════════════════════════════════════════════════════════════
#  Errors
# ════════════════════════════════════════════════════════════════════════


class RadarError(Exception):
    """Base class for errors shown on the status line."""


class ValidationError(RadarError):
    pass


class Conflict(RadarError):
    pass


class NotFound(RadarError):
    pass


class StoreError(RadarError):
    pass


class MirrorError(RadarError):
    pass


class InvalidTransition(RadarError):
    def __init__(self, state: GenerationState, event: str):
        super().__init__(
            f"Invalid transition from {state.value} with event {event}")
        self.state = state
        self.event = event


# ════════════════════════════════════════════════════════════════════════
#  Configuration
# ════════════════════════════════════════════════════════════════════════

DEFAULT_DB_NAME = "adrs.db"
DEFAULT_BLIP_DIR = "./blips"
DEFAULT_ADR_DIR = "./adrs"
MIRROR_EXT = ".mdx"
SAVE_NOTICE_SECONDS = 3.0
PAGE_STEP = 5
RECENT_LIMIT = 5

# app_settings keys that override the environment at startup
SETTING_BLIP_DIR = "BLIP_DIR"
SETTING_ADR_DIR = "ADR_DIR"


@dataclass
class Settings:
    db_path: Path
    blips_dir: Path
    adrs_dir: Path
    author: str = "unknown author"
    log_path: Optional[Path] = None


def detect_author() -> str:
    """Author string for generated files: RADAR_AUTHOR, then git user.name."""
    if os.environ.get("RADAR_AUTHOR"):
        return os.environ["RADAR_AUTHOR"]
    try:
        result = subprocess.run(
            ["git", "config", "--get", "user.name"],
            capture_output=True, text=True, timeout=5,
        )
        name = result.stdout.strip()
        if result.returncode == 0 and name:
            return name
    except (FileNotFoundError, subprocess.TimeoutExpired):
        pass
    return "unknown author"


def load_settings(db=None, blip_dir=None, adr_dir=None) -> Settings:
    """Resolve settings from .env, environment and explicit overrides."""
    load_dotenv()
    base = Path.cwd()
    db_path = Path(db or os.environ.get("DATABASE_NAME") or DEFAULT_DB_NAME)
    if not db_path.is_absolute():
        db_path = base / db_path
    log_env = os.environ.get("RADAR_LOG")
    return Settings(
        db_path=db_path,
        blips_dir=Path(blip_dir or os.environ.get("BLIP_DIR") or DEFAULT_BLIP_DIR),
        adrs_dir=Path(adr_dir or os.environ.get("ADR_DIR") or DEFAULT_ADR_DIR),
        author=detect_author(),
        log_path=Path(log_env) if log_env else db_path.with_suffix(".log"),
    )


def apply_stored_settings(settings: Settings, stored: dict[str, str],
                          pinned: tuple = ()) -> Settings:
    """Overlay app_settings rows; keys named in pinned came from flags."""
    updated = settings
    if stored.get(SETTING_BLIP_DIR) and SETTING_BLIP_DIR not in pinned:
        updated = replace(updated, blips_dir=Path(stored[SETTING_BLIP_DIR]))
    if stored.get(SETTING_ADR_DIR) and SETTING_ADR_DIR not in pinned:
        updated = replace(updated, adrs_dir=Path(stored[SETTING_ADR_DIR]))
    return updated


def configure_logging(log_path: Optional[Path], verbose: bool = False):
    """Send the radar logger to a rotating file; the terminal belongs to the UI.

    Returns the handler so callers can detach it on shutdown.
    """
    level = logging.DEBUG if verbose else logging.INFO
    logger.setLevel(level)
    if log_path is None:
        return None
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        str(log_path), maxBytes=1_000_000, backupCount=3,
    )
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))
    logger.addHandler(handler)
    return handler


def release_logging(handler) -> None:
    logger.removeHandler(handler)
    handler.close()


# ════════════════════════════════════════════════════════════════════════
#  Catalog Store
# ════════════════════════════════════════════════════════════════════════

_BLIP_COLUMNS = (
    "id, name, ring, quadrant, tag, description, created, "
    "(has_adr OR adr_id IS NOT NULL OR EXISTS("
    "SELECT 1 FROM adr WHERE adr.blip_name = blip.name)) AS has_adr, adr_id"
)
_ADR_COLUMNS = "id, title, blip_name, status, timestamp"

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS blip (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL UNIQUE,
        ring TEXT,
        quadrant TEXT,
        tag TEXT,
        description TEXT,
        created TEXT NOT NULL,
        has_adr BOOLEAN DEFAULT FALSE,
        adr_id INTEGER REFERENCES adr(id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS adr (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        title TEXT NOT NULL,
        blip_name TEXT NOT NULL DEFAULT '',
        status TEXT NOT NULL DEFAULT 'proposed',
        timestamp TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS app_settings (
        key TEXT PRIMARY KEY,
        value TEXT
    )
    """,
)

# Columns added after the first release; older databases get them in place.
_LATE_COLUMNS = (
    ("adr", "blip_name", "ALTER TABLE adr ADD COLUMN blip_name TEXT NOT NULL DEFAULT ''"),
    ("adr", "status", "ALTER TABLE adr ADD COLUMN status TEXT NOT NULL DEFAULT 'proposed'"),
    ("blip", "adr_id", "ALTER TABLE blip ADD COLUMN adr_id INTEGER"),
)


def _blip_from_row(row) -> Blip:
    ring = Ring.parse(row["ring"])
    quadrant = Quadrant.parse(row["quadrant"])
    if row["ring"] and ring is None:
        raise StoreError(f"Malformed ring {row['ring']!r} on blip {row['id']}")
    if row["quadrant"] and quadrant is None:
        raise StoreError(
            f"Malformed quadrant {row['quadrant']!r} on blip {row['id']}")
    return Blip(
        id=row["id"],
        name=row["name"],
        ring=ring,
        quadrant=quadrant,
        tag=row["tag"] or "",
        description=row["description"] or "",
        created=row["created"],
        has_adr=bool(row["has_adr"]),
        adr_id=row["adr_id"],
    )


def _adr_from_row(row) -> Adr:
    status = AdrStatus.parse(row["status"])
    if status is None:
        raise StoreError(f"Malformed status {row['status']!r} on ADR {row['id']}")
    return Adr(
        id=row["id"],
        title=row["title"],
        blip_name=row["blip_name"] or "",
        status=status,
        timestamp=row["timestamp"],
    )


class CatalogStore:
    """SQLite-backed catalog of blips, ADRs and app settings.

    Every method is a coroutine; the sqlite3 work runs on a worker thread
    with a connection borrowed from a small fixed pool. There is no cache:
    a committed write is visible to the next read.
    """

    def __init__(self, db_path: Path, pool_size: int = 4):
        self.db_path = Path(db_path)
        self.pool_size = pool_size
        self._pool: Optional[asyncio.Queue] = None
        self._connections: list[sqlite3.Connection] = []

    async def open(self) -> CatalogStore:
        if self._pool is not None:
            return self
        try:
            await asyncio.to_thread(self._create_pool)
        except sqlite3.Error as exc:
            raise StoreError(f"Cannot open database {self.db_path}: {exc}") from exc
        self._pool = asyncio.Queue()
        for conn in self._connections:
            self._pool.put_nowait(conn)
        logger.info("Opened catalog at %s (%d connections)",
                    self.db_path, len(self._connections))
        return self

    def _create_pool(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        for _ in range(self.pool_size):
            conn = sqlite3.connect(
                str(self.db_path), check_same_thread=False, timeout=30)
            conn.row_factory = sqlite3.Row
            self._connections.append(conn)
        self._setup_schema(self._connections[0])

    @staticmethod
    def _setup_schema(conn: sqlite3.Connection) -> None:
        for statement in _SCHEMA:
            conn.execute(statement)
        for table, column, alter in _LATE_COLUMNS:
            rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
            if column not in {r["name"] for r in rows}:
                conn.execute(alter)
        conn.commit()

    async def close(self) -> None:
        if self._pool is None:
            return
        for conn in self._connections:
            conn.close()
        self._connections = []
        self._pool = None
        logger.info("Closed catalog at %s", self.db_path)

    async def __aenter__(self) -> CatalogStore:
        return await self.open()

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def _run(self, fn, *args):
        """Run fn(conn, *args) on a pooled connection in a worker thread."""
        if self._pool is None:
            raise StoreError("Database not initialized")
        conn = await self._pool.get()
        try:
            return await asyncio.to_thread(fn, conn, *args)
        except sqlite3.IntegrityError as exc:
            conn.rollback()
            if "UNIQUE" in str(exc) and "blip.name" in str(exc):
                raise Conflict("Blip already exists") from exc
            raise StoreError(str(exc)) from exc
        except sqlite3.Error as exc:
            conn.rollback()
            raise StoreError(str(exc)) from exc
        finally:
            self._pool.put_nowait(conn)

    # -- Identity ---------------------------------------------------------

    async def next_id(self, kind: EntryKind) -> int:
        table = "adr" if kind is EntryKind.ADR else "blip"

        def _q(conn):
            row = conn.execute(
                f"SELECT COALESCE(MAX(id), 0) + 1 FROM {table}").fetchone()
            return row[0]

        return await self._run(_q)

    # -- Blips ------------------------------------------------------------

    async def insert_blip(self, blip: Blip) -> None:
        name = blip.name.strip()
        if not name:
            raise ValidationError("Blip name is required")

        def _q(conn):
            if conn.execute("SELECT 1 FROM blip WHERE name = ?",
                            (name,)).fetchone():
                return False
            conn.execute(
                "INSERT INTO blip (id, name, ring, quadrant, tag, description, "
                "created, has_adr, adr_id) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (blip.id, name,
                 blip.ring.as_str() if blip.ring else None,
                 blip.quadrant.as_str() if blip.quadrant else None,
                 blip.tag, blip.description, blip.created,
                 blip.adr_id is not None, blip.adr_id),
            )
            conn.commit()
            return True

        try:
            inserted = await self._run(_q)
        except Conflict:
            inserted = False
        if not inserted:
            raise Conflict(f"Blip already exists: {name}")
        logger.info("Inserted blip %d %r", blip.id, name)

    async def update_blip(self, blip_id: int, update: BlipUpdate) -> None:
        if update.name is not None and not update.name.strip():
            raise ValidationError("Blip name is required")

        def _q(conn):
            row = conn.execute(
                f"SELECT {_BLIP_COLUMNS} FROM blip WHERE id = ?",
                (blip_id,)).fetchone()
            if row is None:
                return False
            current = _blip_from_row(row)
            ring = update.ring or current.ring
            quadrant = update.quadrant or current.quadrant
            adr_id = update.adr_id if update.adr_id is not None else current.adr_id
            conn.execute(
                "UPDATE blip SET name = ?, ring = ?, quadrant = ?, tag = ?, "
                "description = ?, adr_id = ?, has_adr = (has_adr OR ?) WHERE id = ?",
                (update.name.strip() if update.name is not None else current.name,
                 ring.as_str() if ring else None,
                 quadrant.as_str() if quadrant else None,
                 update.tag if update.tag is not None else current.tag,
                 (update.description if update.description is not None
                  else current.description),
                 adr_id, adr_id is not None, blip_id),
            )
            conn.commit()
            return True

        try:
            found = await self._run(_q)
        except Conflict:
            raise Conflict(f"Blip already exists: {update.name.strip()}") from None
        if not found:
            raise NotFound(f"Blip {blip_id} not found")
        logger.info("Updated blip %d", blip_id)

    async def get_blip(self, blip_id: int) -> Blip:
        def _q(conn):
            return conn.execute(
                f"SELECT {_BLIP_COLUMNS} FROM blip WHERE id = ?",
                (blip_id,)).fetchone()

        row = await self._run(_q)
        if row is None:
            raise NotFound(f"Blip {blip_id} not found")
        return _blip_from_row(row)

    async def find_blip_by_name(self, name: str) -> Optional[Blip]:
        def _q(conn):
            return conn.execute(
                f"SELECT {_BLIP_COLUMNS} FROM blip WHERE name = ?",
                (name,)).fetchone()

        row = await self._run(_q)
        return _blip_from_row(row) if row is not None else None

    async def exists_blip_by_name(self, name: str) -> bool:
        def _q(conn):
            row = conn.execute(
                "SELECT EXISTS(SELECT 1 FROM blip WHERE name = ?)",
                (name,)).fetchone()
            return bool(row[0])

        return await self._run(_q)

    async def list_blips(self) -> list[Blip]:
        def _q(conn):
            return conn.execute(
                f"SELECT {_BLIP_COLUMNS} FROM blip ORDER BY id DESC").fetchall()

        return [_blip_from_row(r) for r in await self._run(_q)]

    async def recent_blips(self, limit: int = RECENT_LIMIT) -> list[Blip]:
        def _q(conn):
            return conn.execute(
                f"SELECT {_BLIP_COLUMNS} FROM blip "
                "ORDER BY created DESC, id DESC LIMIT ?", (limit,)).fetchall()

        return [_blip_from_row(r) for r in await self._run(_q)]

    async def count_blips(self) -> int:
        return await self._scalar("SELECT COUNT(*) FROM blip")

    async def counts_by_ring(self) -> dict[Ring, int]:
        rows = await self._grouped("ring")
        return {Ring.parse(k): v for k, v in rows if Ring.parse(k)}

    async def counts_by_quadrant(self) -> dict[Quadrant, int]:
        rows = await self._grouped("quadrant")
        return {Quadrant.parse(k): v for k, v in rows if Quadrant.parse(k)}

    async def _grouped(self, column: str) -> list[tuple[str, int]]:
        def _q(conn):
            return [
                (r[0], r[1]) for r in conn.execute(
                    f"SELECT {column}, COUNT(*) FROM blip "
                    f"WHERE {column} IS NOT NULL GROUP BY {column}")
            ]

        return await self._run(_q)

    async def _scalar(self, sql: str, params: tuple = ()) -> int:
        def _q(conn):
            return conn.execute(sql, params).fetchone()[0]

        return await self._run(_q)

    # -- ADRs -------------------------------------------------------------

    async def insert_adr(self, adr: Adr) -> None:
        if not adr.title.strip():
            raise ValidationError("ADR title is required")

        def _q(conn):
            conn.execute(
                "INSERT INTO adr (id, title, blip_name, status, timestamp) "
                "VALUES (?, ?, ?, ?, ?)",
                (adr.id, adr.title.strip(), adr.blip_name,
                 adr.status.as_str(), adr.timestamp),
            )
            conn.commit()

        await self._run(_q)
        logger.info("Inserted ADR %d %r (blip %r)", adr.id, adr.title,
                    adr.blip_name)

    async def update_adr(self, adr_id: int, update: AdrUpdate) -> None:
        if update.title is not None and not update.title.strip():
            raise ValidationError("ADR title is required")

        def _q(conn):
            row = conn.execute(
                f"SELECT {_ADR_COLUMNS} FROM adr WHERE id = ?",
                (adr_id,)).fetchone()
            if row is None:
                return False
            current = _adr_from_row(row)
            conn.execute(
                "UPDATE adr SET title = ?, blip_name = ?, status = ?, "
                "timestamp = ? WHERE id = ?",
                (update.title.strip() if update.title is not None else current.title,
                 (update.blip_name if update.blip_name is not None
                  else current.blip_name),
                 (update.status or current.status).as_str(),
                 update.timestamp or current.timestamp,
                 adr_id),
            )
            conn.commit()
            return True

        if not await self._run(_q):
            raise NotFound(f"ADR {adr_id} not found")
        logger.info("Updated ADR %d", adr_id)

    async def get_adr(self, adr_id: int) -> Adr:
        def _q(conn):
            return conn.execute(
                f"SELECT {_ADR_COLUMNS} FROM adr WHERE id = ?",
                (adr_id,)).fetchone()

        row = await self._run(_q)
        if row is None:
            raise NotFound(f"ADR {adr_id} not found")
        return _adr_from_row(row)

    async def list_adrs(self, blip_name: Optional[str] = None) -> list[Adr]:
        def _q(conn):
            if blip_name:
                return conn.execute(
                    f"SELECT {_ADR_COLUMNS} FROM adr WHERE blip_name = ? "
                    "ORDER BY id DESC", (blip_name,)).fetchall()
            return conn.execute(
                f"SELECT {_ADR_COLUMNS} FROM adr ORDER BY id DESC").fetchall()

        return [_adr_from_row(r) for r in await self._run(_q)]

    async def count_adrs(self) -> int:
        return await self._scalar("SELECT COUNT(*) FROM adr")

    # -- Settings ---------------------------------------------------------

    async def set_setting(self, key: str, value: str) -> None:
        def _q(conn):
            conn.execute(
                "INSERT INTO app_settings (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, value),
            )
            conn.commit()

        await self._run(_q)
        logger.info("Setting %s = %r", key, value)

    async def get_settings(self) -> dict[str, str]:
        def _q(conn):
            return {
                r["key"]: r["value"] for r in conn.execute(
                    "SELECT key, value FROM app_settings ORDER BY key")
            }

        return await self._run(_q)


async def load_stats(store: CatalogStore) -> CatalogStats:
    by_ring = await store.counts_by_ring()
    by_quadrant = await store.counts_by_quadrant()
    return CatalogStats(
        total_blips=await store.count_blips(),
        total_adrs=await store.count_adrs(),
        by_ring={r.as_str(): by_ring.get(r, 0) for r in Ring},
        by_quadrant={q.as_str(): by_quadrant.get(q, 0) for q in Quadrant},
        recent=await store.recent_blips(RECENT_LIMIT),
    )


# ════════════════════════════════════════════════════════════════════════
#  Search Index
# ════════════════════════════════════════════════════════════════════════


def _subsequence_score(query: str, hay: str) -> Optional[float]:
    """Score an in-order character match; None when query is not a subsequence."""
    pos = -1
    first = None
    for ch in query:
        nxt = hay.find(ch, pos + 1)
        if nxt < 0:
            return None
        if first is None:
            first = nxt
        pos = nxt
    span = pos - first + 1
    return 50.0 * len(query) / span


def fuzzy_rank(haystacks: list[str], query: str) -> list[int]:
    """Indices of matching haystacks, best first.

    Substring hits score 100; scattered in-order hits score by compactness.
    A hay that fails a query also fails every longer query containing it.
    """
    q = query.strip().lower()
    if not q:
        return list(range(len(haystacks)))
    scored: list[tuple[float, int]] = []
    for i, hay in enumerate(haystacks):
        hay = hay.lower()
        if q in hay:
            scored.append((100.0, i))
        else:
            score = _subsequence_score(q, hay)
            if score is not None:
                scored.append((score, i))
    scored.sort(key=lambda x: x[0], reverse=True)
    return [i for _, i in scored]


def blip_haystack(blip: Blip) -> str:
    return " ".join([
        blip.name,
        blip.ring.as_str() if blip.ring else "",
        blip.quadrant.as_str() if blip.quadrant else "",
        blip.tag,
        blip.description,
    ])


def adr_haystack(adr: Adr) -> str:
    return " ".join([adr.title, adr.blip_name, adr.status.as_str()])


class SearchIndex:
    """In-memory filter over the loaded blip and ADR lists."""

    def __init__(self):
        self.blips: list[Blip] = []
        self.adrs: list[Adr] = []
        self.query = ""
        self.blip_hits: list[int] = []
        self.adr_hits: list[int] = []

    def load(self, blips=None, adrs=None) -> None:
        if blips is not None:
            self.blips = list(blips)
        if adrs is not None:
            self.adrs = list(adrs)
        self._refilter()

    def set_query(self, query: str) -> bool:
        """Re-filter both lists; True when either filtered set changed."""
        before = (list(self.blip_hits), list(self.adr_hits))
        self.query = query
        self._refilter()
        return before != (self.blip_hits, self.adr_hits)

    def clear(self) -> bool:
        return self.set_query("")

    def _refilter(self) -> None:
        self.blip_hits = fuzzy_rank([blip_haystack(b) for b in self.blips],
                                    self.query)
        self.adr_hits = fuzzy_rank([adr_haystack(a) for a in self.adrs],
                                   self.query)

    def visible_blips(self) -> list[Blip]:
        return [self.blips[i] for i in self.blip_hits]

    def visible_adrs(self) -> list[Adr]:
        return [self.adrs[i] for i in self.adr_hits]

    def blip_at(self, row: int) -> Optional[Blip]:
        if 0 <= row < len(self.blip_hits):
            return self.blips[self.blip_hits[row]]
        return None

    def adr_at(self, row: int) -> Optional[Adr]:
        if 0 <= row < len(self.adr_hits):
            return self.adrs[self.adr_hits[row]]
        return None

    def blip_row(self, blip_id: int) -> Optional[int]:
        for row, i in enumerate(self.blip_hits):
            if self.blips[i].id == blip_id:
                return row
        return None

    def adr_row(self, adr_id: int) -> Optional[int]:
        for row, i in enumerate(self.adr_hits):
            if self.adrs[i].id == adr_id:
                return row
        return None


# ════════════════════════════════════════════════════════════════════════
#  Markdown Mirror
# ════════════════════════════════════════════════════════════════════════


def sanitize_name(name: str) -> str:
    return name.strip().replace(" ", "-").lower()


def date_prefix(created: str) -> str:
    return created.split("T")[0][:10]


def mirror_file_name(created: str, name: str) -> str:
    return f"{date_prefix(created)}-{sanitize_name(name)}{MIRROR_EXT}"


def parse_yaml_frontmatter(content: str) -> dict:
    """Extract key:value pairs from YAML frontmatter fenced by ---."""
    m = re.match(r"^---\n(.*?)\n---", content, re.DOTALL)
    if not m:
        return {}
    yaml: dict[str, str] = {}
    for line in m.group(1).split("\n"):
        idx = line.find(":")
        if idx > 0:
            key = line[:idx].strip()
            val = line[idx + 1:].strip()
            # Strip surrounding quotes
            if len(val) >= 2 and val[0] == val[-1] and val[0] in ('"', "'"):
                val = val[1:-1]
            yaml[key] = val
    return yaml


def _mirror_id(path: Path) -> Optional[str]:
    try:
        return parse_yaml_frontmatter(path.read_text(encoding="utf-8")).get("id")
    except (OSError, UnicodeDecodeError):
        return None


def resolve_mirror_path(directory: Path, created: str, name: str,
                        record_id: Optional[int] = None) -> Path:
    """Expected mirror path, or an existing file with the same name suffix.

    Among suffix matches, a file whose front matter id equals record_id
    wins; files that name a different id belong to another record and are
    skipped.
    """
    expected = directory / mirror_file_name(created, name)
    if expected.exists() or not directory.is_dir():
        return expected
    suffix = f"-{sanitize_name(name)}{MIRROR_EXT}"
    candidates = sorted(
        p for p in directory.iterdir() if p.is_file() and p.name.endswith(suffix))
    if not candidates:
        return expected
    if record_id is None:
        found = candidates[0]
    else:
        ids = {p: _mirror_id(p) for p in candidates}
        owned = [p for p in candidates if ids[p] == str(record_id)]
        unowned = [p for p in candidates if not ids[p]]
        if owned:
            found = owned[0]
        elif unowned:
            found = unowned[0]
        else:
            return expected
    logger.info("Rediscovered mirror %s (expected %s)", found.name, expected.name)
    return found


def _yaml_str(value) -> str:
    """YAML double-quoted scalar."""
    return json.dumps(value, ensure_ascii=False)


def render_blip(blip: Blip, author: str) -> str:
    ring = blip.ring.as_str() if blip.ring else None
    quadrant = blip.quadrant.as_str() if blip.quadrant else None
    description = _yaml_str(blip.description) if blip.description else "{{description}}"
    has_adr = "true" if blip.has_adr else "false"
    lines = [
        "---",
        f"id: {_yaml_str(str(blip.id))}",
        f"name: {_yaml_str(blip.name)}",
        f"ring: {_yaml_str(ring) if ring else 'null'}",
        f"quadrant: {_yaml_str(quadrant) if quadrant else 'null'}",
        f"tags: [{_yaml_str(blip.tag)}]",
        f"authors: [{_yaml_str(author)}]",
        f"hasAdr: {has_adr}",
        f"adrId: {blip.adr_id if blip.adr_id is not None else 'null'}",
        f"description: {description}",
        f"created: {_yaml_str(blip.created)}",
        "---",
        "",
        f"# {blip.name}",
        "",
        f"**Ring**: {ring or '(none)'}",
        f"**Quadrant**: {quadrant or '(none)'}",
        f"**Tags**: {blip.tag or '(none)'}",
        f"**Description**: {blip.description or '{{description}}'}",
        f"**has ADR**: {has_adr}",
        "",
    ]
    return "\n".join(lines)


_ADR_BODY = """\
## Context

[Describe the context and problem statement, e.g., in free form using two to \
three sentences. You may want to articulate the problem in form of a question.]

## Decision

[Describe the decision that was made]

## Consequences

[Describe the resulting context, after applying the decision. All \
consequences should be listed here, not just the "positive" ones. A \
particular decision may have positive, negative, and neutral consequences, \
but all of them affect the team and project in the future.]
"""


def render_adr(adr: Adr) -> str:
    blip = _yaml_str(adr.blip_name) if adr.blip_name else "null"
    lines = [
        "---",
        f"id: {_yaml_str(str(adr.id))}",
        f"title: {_yaml_str(adr.title)}",
        f"blip: {blip}",
        f"date: {_yaml_str(adr.timestamp)}",
        f"status: {_yaml_str(adr.status.as_str())}",
        "---",
        "",
        f"# {adr.title}",
        "",
        _ADR_BODY,
    ]
    return "\n".join(lines)


class MarkdownMirror:
    """Writes the markdown twin of each catalog record.

    The file is always regenerated whole from the record; a write failure
    raises MirrorError and never touches the store.
    """

    def __init__(self, blips_dir: Path, adrs_dir: Path, author: str):
        self.blips_dir = Path(blips_dir)
        self.adrs_dir = Path(adrs_dir)
        self.author = author

    def blip_path(self, blip: Blip) -> Path:
        return resolve_mirror_path(self.blips_dir, blip.created, blip.name, blip.id)

    def adr_path(self, adr: Adr) -> Path:
        return resolve_mirror_path(self.adrs_dir, adr.timestamp, adr.title, adr.id)

    def write_blip_mirror(self, blip: Blip, previous_name: Optional[str] = None) -> Path:
        path = self.blip_path(blip)
        if previous_name and previous_name != blip.name:
            old = resolve_mirror_path(self.blips_dir, blip.created, previous_name, blip.id)
            return self._write(self.blips_dir, path, render_blip(blip, self.author), old)
        return self._write(self.blips_dir, path, render_blip(blip, self.author))

    def write_adr_mirror(self, adr: Adr, previous_title: Optional[str] = None) -> Path:
        path = self.adr_path(adr)
        if previous_title and previous_title != adr.title:
            old = resolve_mirror_path(self.adrs_dir, adr.timestamp, previous_title, adr.id)
            return self._write(self.adrs_dir, path, render_adr(adr), old)
        return self._write(self.adrs_dir, path, render_adr(adr))

    def _write(self, directory: Path, path: Path, content: str,
               renamed_from: Optional[Path] = None) -> Path:
        try:
            directory.mkdir(parents=True, exist_ok=True)
            if renamed_from is not None and renamed_from.exists() and not path.exists():
                renamed_from.rename(path)
                logger.info("Renamed mirror %s -> %s", renamed_from.name, path.name)
            path.write_text(content, encoding="utf-8")
        except OSError as exc:
            logger.warning("Mirror write failed for %s: %s", path, exc)
            raise MirrorError(str(exc)) from exc
        logger.info("Wrote mirror %s", path)
        return path


# ════════════════════════════════════════════════════════════════════════
#  Entry Wizard
# ════════════════════════════════════════════════════════════════════════


def is_text_key(key: str) -> bool:
    return len(key) == 1 and key.isprintable()


@dataclass
class WizardDraft:
    """Fields collected for one new entry; never persisted directly."""
    name: str = ""
    quadrant: Optional[Quadrant] = None
    ring: Optional[Ring] = None
    status: Optional[AdrStatus] = None
    blip_id: Optional[int] = None


class EntryWizard:
    """Sequential input flow that collects a new blip or ADR.

    Reaches WizardState.GENERATING when the draft is complete; the
    generation pipeline then reports back through on_success/on_error.
    """

    KINDS = (EntryKind.ADR, EntryKind.BLIP)

    def __init__(self, store: CatalogStore):
        self.store = store
        self.state = WizardState.WAITING_FOR_COMMAND
        self.kind: Optional[EntryKind] = None
        self.draft = WizardDraft()
        self.input = ""
        self.cursor = 0
        self.message = ""
        self.last_path: Optional[Path] = None
        self._name_checks: dict[str, bool] = {}

    def options(self) -> list:
        """Options for the current picker state, empty outside pickers."""
        if self.state is WizardState.WAITING_FOR_COMMAND:
            return list(self.KINDS)
        if self.state is WizardState.CHOOSING_QUADRANT:
            return Quadrant.options()
        if self.state is WizardState.CHOOSING_RING:
            return Ring.options()
        if self.state is WizardState.CHOOSING_ADR_STATUS:
            return AdrStatus.options()
        return []

    async def handle_key(self, key: str) -> None:
        if key == "escape":
            self.cancel()
            return
        state = self.state
        if state is WizardState.ENTERING_NAME:
            if key == "enter":
                await self.submit_name()
            elif key == "backspace":
                self.input = self.input[:-1]
            elif is_text_key(key):
                self.input += key
        elif state is WizardState.WAITING_FOR_COMMAND:
            if key == "a":
                self.choose_kind(EntryKind.ADR)
            elif key == "b":
                self.choose_kind(EntryKind.BLIP)
            elif key in ("up", "left"):
                self.move(-1)
            elif key in ("down", "right"):
                self.move(1)
            elif key == "enter":
                self.choose_kind(self.KINDS[self.cursor])
        elif state in (WizardState.CHOOSING_QUADRANT, WizardState.CHOOSING_RING,
                       WizardState.CHOOSING_ADR_STATUS):
            if key == "up":
                self.move(-1)
            elif key == "down":
                self.move(1)
            elif key == "enter":
                self.submit_selection()
        elif state is WizardState.COMPLETED:
            if key in ("enter", "n"):
                self.acknowledge()

    def move(self, delta: int) -> None:
        count = len(self.options())
        if delta < 0:
            self.cursor = wrap_decrement(self.cursor, count)
        else:
            self.cursor = wrap_increment(self.cursor, count)

    def choose_kind(self, kind: EntryKind) -> None:
        self.kind = kind
        self.draft = WizardDraft()
        self.input = ""
        self.cursor = 0
        self.message = ""
        self.state = WizardState.ENTERING_NAME

    async def name_exists(self, name: str) -> bool:
        """Blip-name uniqueness, asked of the store once per distinct name."""
        if name not in self._name_checks:
            self._name_checks[name] = await self.store.exists_blip_by_name(name)
        return self._name_checks[name]

    async def submit_name(self) -> None:
        name = self.input.strip()
        if not name:
            self.message = "Name is required."
            return
        self.draft.name = name
        if self.kind is EntryKind.BLIP:
            try:
                exists = await self.name_exists(name)
            except StoreError as exc:
                self.message = f"Error: Failed to check blip name: {exc}"
                return
            if exists:
                self.message = f"Error: Blip already exists: {name}"
                return
            self.state = WizardState.CHOOSING_QUADRANT
        else:
            self.draft.status = AdrStatus.PROPOSED
            self.state = WizardState.CHOOSING_ADR_STATUS
        self.cursor = 0
        self.message = ""

    def submit_selection(self) -> None:
        if self.state is WizardState.CHOOSING_QUADRANT:
            quadrant = Quadrant.from_index(self.cursor)
            if quadrant is None:
                self.message = "Invalid quadrant selection."
                return
            self.draft.quadrant = quadrant
            self.cursor = self.draft.ring.index() if self.draft.ring else 0
            self.state = WizardState.CHOOSING_RING
        elif self.state is WizardState.CHOOSING_RING:
            ring = Ring.from_index(self.cursor)
            if ring is None:
                self.message = "Invalid ring selection."
                return
            self.draft.ring = ring
            self.state = WizardState.GENERATING
        elif self.state is WizardState.CHOOSING_ADR_STATUS:
            status = AdrStatus.from_index(self.cursor)
            if status is None:
                self.message = "Invalid status selection."
                return
            self.draft.status = status
            self.state = WizardState.GENERATING
        else:
            return
        self.message = "Generating file..." if self.state is WizardState.GENERATING else ""

    def seed_adr_for(self, blip: Blip) -> None:
        """Start an ADR for an existing blip, skipping name entry."""
        self.kind = EntryKind.ADR
        self.draft = WizardDraft(
            name=blip.name,
            quadrant=blip.quadrant,
            ring=blip.ring,
            status=AdrStatus.PROPOSED,
            blip_id=blip.id,
        )
        self.input = blip.name
        self.cursor = 0
        self.message = "Select ADR status"
        self.state = WizardState.CHOOSING_ADR_STATUS

    def on_success(self, path: Optional[Path], warning: str = "") -> None:
        self.last_path = path
        name = path.name if path else "unknown"
        self.message = warning or f"File generated: {name}"
        self.state = WizardState.COMPLETED

    def on_error(self, message: str, conflict: bool = False) -> None:
        self.message = f"Error: {message}"
        if conflict:
            self._name_checks[self.draft.name] = True
            self.input = self.draft.name
            self.state = WizardState.ENTERING_NAME
        elif self.kind is EntryKind.BLIP:
            self.cursor = self.draft.ring.index() if self.draft.ring else 0
            self.state = WizardState.CHOOSING_RING
        else:
            self.cursor = self.draft.status.index() if self.draft.status else 0
            self.state = WizardState.CHOOSING_ADR_STATUS

    def acknowledge(self) -> None:
        self.reset()

    def cancel(self) -> None:
        self.reset()

    def reset(self) -> None:
        self.state = WizardState.WAITING_FOR_COMMAND
        self.kind = None
        self.draft = WizardDraft()
        self.input = ""
        self.cursor = 0
        self.message = ""
        self._name_checks.clear()


# ════════════════════════════════════════════════════════════════════════
#  Generation Pipeline
# ════════════════════════════════════════════════════════════════════════


def utc_today() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d")


@dataclass
class GenerationOutcome:
    ok: bool
    path: Optional[Path] = None
    message: str = ""
    record: object = None
    conflict: bool = False


class GenerationPipeline:
    """Commits a completed wizard draft to the store and its mirror file.

    Idle -> Generating -> Success | Error -> Idle, once per draft.
    """

    _TRANSITIONS = {
        (GenerationState.IDLE, "start"): GenerationState.GENERATING,
        (GenerationState.GENERATING, "success"): GenerationState.SUCCESS,
        (GenerationState.GENERATING, "error"): GenerationState.ERROR,
        (GenerationState.SUCCESS, "reset"): GenerationState.IDLE,
        (GenerationState.ERROR, "reset"): GenerationState.IDLE,
    }

    def __init__(self, store: CatalogStore, mirror: MarkdownMirror,
                 today: Callable[[], str] = utc_today):
        self.store = store
        self.mirror = mirror
        self.today = today
        self.state = GenerationState.IDLE

    def process(self, event: str) -> GenerationState:
        nxt = self._TRANSITIONS.get((self.state, event))
        if nxt is None:
            raise InvalidTransition(self.state, event)
        logger.debug("Generation %s --%s--> %s", self.state.value, event, nxt.value)
        self.state = nxt
        return nxt

    async def run(self, app: AppState) -> Optional[GenerationOutcome]:
        """Generate once if the wizard is ready; None when there is nothing to do."""
        wizard = app.wizard
        if wizard.state is not WizardState.GENERATING:
            return None
        if self.state is not GenerationState.IDLE:
            return None
        self.process("start")
        try:
            try:
                outcome = await self._generate(app)
            except RadarError as exc:
                outcome = GenerationOutcome(
                    ok=False, message=str(exc),
                    conflict=isinstance(exc, Conflict))
            if outcome.ok:
                self.process("success")
                wizard.on_success(outcome.path, outcome.message)
            else:
                self.process("error")
                logger.warning("Generation failed: %s", outcome.message)
                wizard.on_error(outcome.message, conflict=outcome.conflict)
            self.process("reset")
        finally:
            if self.state is not GenerationState.IDLE:
                logger.error("Generation aborted in state %s", self.state.value)
                self.state = GenerationState.IDLE
        return outcome

    async def _generate(self, app: AppState) -> GenerationOutcome:
        wizard = app.wizard
        kind = wizard.kind
        draft = wizard.draft
        if kind is None:
            raise ValidationError("No entry kind selected")
        if not draft.name.strip():
            raise ValidationError("Name is required")
        today = self.today()
        entry_id = await self.store.next_id(kind)
        warnings: list[str] = []

        if kind is EntryKind.ADR:
            if draft.status is None:
                raise ValidationError("ADR status missing")
            linked = await self.store.find_blip_by_name(draft.name)
            adr = Adr(
                id=entry_id,
                title=draft.name,
                blip_name=draft.name,
                status=draft.status,
                timestamp=today,
            )
            await self.store.insert_adr(adr)
            if linked is not None:
                warnings.extend(await self._link_blip(linked, adr))
            record = adr
            write = self.mirror.write_adr_mirror
        else:
            if draft.quadrant is None:
                raise ValidationError("Quadrant selection missing")
            if draft.ring is None:
                raise ValidationError("Ring selection missing")
            # the wizard checked once already; the store may have moved on
            if await self.store.exists_blip_by_name(draft.name):
                raise Conflict(f"Blip already exists: {draft.name}")
            blip = Blip(
                id=entry_id,
                name=draft.name,
                ring=draft.ring,
                quadrant=draft.quadrant,
                created=today,
            )
            await self.store.insert_blip(blip)
            record = blip
            write = self.mirror.write_blip_mirror

        # the row is committed from here on; later failures only warn
        path = None
        try:
            path = write(record)
        except MirrorError as exc:
            warnings.append(f"saved to store, but file sync failed: {exc}")
        try:
            await app.reload_blips()
            await app.reload_adrs()
        except RadarError as exc:
            logger.error("%s %d saved but reloading lists failed: %s",
                         kind.label(), record.id, exc)
            warnings.append(f"saved, but refreshing lists failed: {exc}")
        return GenerationOutcome(
            ok=True, path=path, message="; ".join(warnings), record=record)

    async def _link_blip(self, blip: Blip, adr: Adr) -> list[str]:
        """Point the blip at its new ADR; failures leave the ADR in place."""
        try:
            await self.store.update_blip(blip.id, BlipUpdate(adr_id=adr.id))
            linked = await self.store.get_blip(blip.id)
        except RadarError as exc:
            logger.error("ADR %d saved but linking blip %r failed: %s",
                         adr.id, blip.name, exc)
            return [f"ADR saved, but linking blip {blip.name} failed: {exc}"]
        try:
            self.mirror.write_blip_mirror(linked)
        except MirrorError as exc:
            return [f"blip {blip.name} saved, but file sync failed: {exc}"]
        return []


# ════════════════════════════════════════════════════════════════════════
#  Edit Forms
# ════════════════════════════════════════════════════════════════════════


class BlipField(Enum):
    NAME = "name"
    RING = "ring"
    QUADRANT = "quadrant"
    TAG = "tag"
    DESCRIPTION = "description"
    SAVE = "save"


class AdrField(Enum):
    TITLE = "title"
    STATUS = "status"
    SAVE = "save"


class EditForm:
    """Field editor over a copy of one record.

    The field under edit is copied into `buffer`; Enter writes it back,
    Esc drops it. Choice fields cycle with left/right instead of typing.
    """

    FIELDS: tuple = ()
    CHOICES: dict = {}
    LABELS: dict = {}

    def __init__(self, record_id: int, values: dict):
        self.record_id = record_id
        self.values = dict(values)
        self.original = dict(values)
        self.cursor = 0
        self.editing = False
        self.buffer = None

    @property
    def field(self):
        return self.FIELDS[self.cursor]

    def on_save(self) -> bool:
        return self.field.value == "save"

    def move(self, delta: int) -> None:
        if self.editing:
            return
        if delta < 0:
            self.cursor = wrap_decrement(self.cursor, len(self.FIELDS))
        else:
            self.cursor = wrap_increment(self.cursor, len(self.FIELDS))

    def begin_edit(self) -> None:
        if self.on_save():
            return
        self.buffer = self.values[self.field]
        self.editing = True

    def commit_edit(self) -> None:
        if self.editing:
            self.values[self.field] = self.buffer
        self.editing = False
        self.buffer = None

    def abort_edit(self) -> None:
        self.editing = False
        self.buffer = None

    def type_char(self, ch: str) -> None:
        if self.editing and self.field not in self.CHOICES:
            self.buffer = (self.buffer or "") + ch

    def backspace(self) -> None:
        if self.editing and self.field not in self.CHOICES:
            self.buffer = (self.buffer or "")[:-1]

    def cycle(self, delta: int) -> None:
        if not self.editing or self.field not in self.CHOICES:
            return
        choice = self.CHOICES[self.field]
        if self.buffer is None:
            members = choice.options()
            self.buffer = members[0] if delta > 0 else members[-1]
        else:
            self.buffer = self.buffer.next() if delta > 0 else self.buffer.prev()

    def display(self, field) -> str:
        value = self.buffer if self.editing and field is self.field else self.values.get(field)
        if value is None:
            return "(none)"
        if isinstance(value, Enum):
            return value.as_str()
        return value

    def changed(self, field) -> bool:
        return self.values[field] != self.original[field]


class BlipEditForm(EditForm):
    FIELDS = tuple(BlipField)
    CHOICES = {BlipField.RING: Ring, BlipField.QUADRANT: Quadrant}
    LABELS = {
        BlipField.NAME: "Name",
        BlipField.RING: "Ring",
        BlipField.QUADRANT: "Quadrant",
        BlipField.TAG: "Tag",
        BlipField.DESCRIPTION: "Description",
        BlipField.SAVE: "Save",
    }

    @classmethod
    def from_blip(cls, blip: Blip) -> BlipEditForm:
        return cls(blip.id, {
            BlipField.NAME: blip.name,
            BlipField.RING: blip.ring,
            BlipField.QUADRANT: blip.quadrant,
            BlipField.TAG: blip.tag,
            BlipField.DESCRIPTION: blip.description,
        })

    def to_update(self) -> BlipUpdate:
        update = BlipUpdate()
        for f in (BlipField.NAME, BlipField.RING, BlipField.QUADRANT,
                  BlipField.TAG, BlipField.DESCRIPTION):
            if self.changed(f):
                setattr(update, f.value, self.values[f])
        return update


class AdrEditForm(EditForm):
    FIELDS = tuple(AdrField)
    CHOICES = {AdrField.STATUS: AdrStatus}
    LABELS = {
        AdrField.TITLE: "Title",
        AdrField.STATUS: "Status",
        AdrField.SAVE: "Save",
    }

    @classmethod
    def from_adr(cls, adr: Adr) -> AdrEditForm:
        return cls(adr.id, {AdrField.TITLE: adr.title, AdrField.STATUS: adr.status})

    def to_update(self) -> AdrUpdate:
        update = AdrUpdate()
        if self.changed(AdrField.TITLE):
            update.title = self.values[AdrField.TITLE]
        if self.changed(AdrField.STATUS):
            update.status = self.values[AdrField.STATUS]
        return update


# ════════════════════════════════════════════════════════════════════════
#  Navigator
# ════════════════════════════════════════════════════════════════════════

BLIP_ACTIONS = ("Details", "ADR", "Edit", "Back")
ADR_ACTIONS = ("Details", "View linked blip", "Edit", "Back")

_LIST_SCREENS = (Screen.VIEW_BLIPS, Screen.VIEW_ADRS)


class Navigator:
    """Screen state machine for browsing and editing loaded entries."""

    def __init__(self, app: AppState):
        self.app = app
        self.screen = Screen.MAIN
        self.blip_cursor = 0
        self.adr_cursor = 0
        self.action_cursor = 0
        self.searching = False
        self.adr_filter: Optional[str] = None
        self.selected_blip: Optional[Blip] = None
        self.selected_adr: Optional[Adr] = None
        self.blip_form: Optional[BlipEditForm] = None
        self.adr_form: Optional[AdrEditForm] = None
        self.should_quit = False

    def action_labels(self) -> tuple:
        if self.screen is Screen.BLIP_ACTIONS:
            blip = self.selected_blip
            adr_label = "View ADR" if blip and blip.has_adr else "Generate ADR"
            return (BLIP_ACTIONS[0], adr_label) + BLIP_ACTIONS[2:]
        return ADR_ACTIONS

    async def handle_key(self, key: str) -> None:
        handler = {
            Screen.MAIN: self._main_key,
            Screen.VIEW_BLIPS: self._list_key,
            Screen.VIEW_ADRS: self._list_key,
            Screen.BLIP_ACTIONS: self._blip_actions_key,
            Screen.ADR_ACTIONS: self._adr_actions_key,
            Screen.BLIP_DETAILS: self._details_key,
            Screen.ADR_DETAILS: self._details_key,
            Screen.EDIT_BLIP: self._edit_blip_key,
            Screen.EDIT_ADR: self._edit_adr_key,
        }[self.screen]
        await handler(key)

    # -- Main -------------------------------------------------------------

    async def _main_key(self, key: str) -> None:
        wizard = self.app.wizard
        if wizard.state is WizardState.WAITING_FOR_COMMAND:
            if key == "q":
                self.should_quit = True
                return
            if key == "l":
                await self.open_blips()
                return
            if key == "v":
                await self.open_adrs()
                return
        await wizard.handle_key(key)

    async def open_blips(self) -> None:
        await self.app.reload_blips()
        self.blip_cursor = 0
        self.screen = Screen.VIEW_BLIPS

    async def open_adrs(self, blip_name: Optional[str] = None) -> None:
        self.adr_filter = blip_name
        await self.app.reload_adrs()
        self.adr_cursor = 0
        self.screen = Screen.VIEW_ADRS

    # -- Lists ------------------------------------------------------------

    def _visible_count(self) -> int:
        search = self.app.search
        if self.screen is Screen.VIEW_BLIPS:
            return len(search.blip_hits)
        return len(search.adr_hits)

    def _set_list_cursor(self, value: int) -> None:
        value = clamp(value, self._visible_count())
        if self.screen is Screen.VIEW_BLIPS:
            self.blip_cursor = value
        else:
            self.adr_cursor = value

    def _list_cursor(self) -> int:
        return self.blip_cursor if self.screen is Screen.VIEW_BLIPS else self.adr_cursor

    async def _list_key(self, key: str) -> None:
        if self.searching:
            self._search_key(key)
            return
        moves = {
            "up": self._list_cursor() - 1,
            "down": self._list_cursor() + 1,
            "pageup": self._list_cursor() - PAGE_STEP,
            "pagedown": self._list_cursor() + PAGE_STEP,
            "home": 0,
            "end": self._visible_count() - 1,
        }
        if key in moves:
            self._set_list_cursor(moves[key])
        elif key == "/":
            self.searching = True
        elif key == "enter":
            self._open_actions()
        elif key == "escape":
            self.app.search.clear()
            self.adr_filter = None
            self.screen = Screen.MAIN

    def _search_key(self, key: str) -> None:
        search = self.app.search
        if key == "escape":
            self.searching = False
            changed = search.clear()
        elif key == "enter":
            self.searching = False
            self.app.notify("Search applied")
            return
        elif key == "backspace":
            changed = search.set_query(search.query[:-1])
        elif is_text_key(key):
            changed = search.set_query(search.query + key)
        else:
            return
        if changed:
            self.blip_cursor = 0
            self.adr_cursor = 0

    def _open_actions(self) -> None:
        search = self.app.search
        self.action_cursor = 0
        if self.screen is Screen.VIEW_BLIPS:
            blip = search.blip_at(self.blip_cursor)
            if blip is not None:
                self.selected_blip = blip
                self.screen = Screen.BLIP_ACTIONS
        else:
            adr = search.adr_at(self.adr_cursor)
            if adr is not None:
                self.selected_adr = adr
                self.screen = Screen.ADR_ACTIONS

    # -- Action menus -------------------------------------------------------

    def _move_action(self, key: str, count: int) -> bool:
        if key == "up":
            self.action_cursor = wrap_decrement(self.action_cursor, count)
        elif key == "down":
            self.action_cursor = wrap_increment(self.action_cursor, count)
        else:
            return False
        return True

    async def _blip_actions_key(self, key: str) -> None:
        if self._move_action(key, len(BLIP_ACTIONS)):
            return
        if key == "escape":
            self.screen = Screen.VIEW_BLIPS
            return
        if key != "enter":
            return
        blip = self.selected_blip
        if self.action_cursor == 0:
            self.screen = Screen.BLIP_DETAILS
        elif self.action_cursor == 1:
            await self._blip_adr_action(blip)
        elif self.action_cursor == 2:
            self.blip_form = BlipEditForm.from_blip(blip)
            self.screen = Screen.EDIT_BLIP
        else:
            self.screen = Screen.VIEW_BLIPS

    async def _blip_adr_action(self, blip: Blip) -> None:
        if blip.has_adr:
            try:
                await self.open_adrs(blip.name)
            except RadarError as exc:
                self.app.notify(f"Failed to fetch ADRs for blip: {exc}")
                self.screen = Screen.VIEW_BLIPS
            return
        self.app.wizard.seed_adr_for(blip)
        self.screen = Screen.MAIN

    async def _adr_actions_key(self, key: str) -> None:
        if self._move_action(key, len(ADR_ACTIONS)):
            return
        if key == "escape":
            self.screen = Screen.VIEW_ADRS
            return
        if key != "enter":
            return
        adr = self.selected_adr
        if self.action_cursor == 0:
            self.screen = Screen.ADR_DETAILS
        elif self.action_cursor == 1:
            await self._view_linked_blip(adr)
        elif self.action_cursor == 2:
            self.adr_form = AdrEditForm.from_adr(adr)
            self.screen = Screen.EDIT_ADR
        else:
            self.screen = Screen.VIEW_ADRS

    async def _view_linked_blip(self, adr: Adr) -> None:
        if not adr.blip_name:
            self.app.notify("ADR is not linked to a blip")
            return
        blip = await self.app.store.find_blip_by_name(adr.blip_name)
        if blip is None:
            self.app.notify(f"Linked blip not found: {adr.blip_name}")
            return
        self.app.search.clear()
        await self.app.reload_blips()
        self.blip_cursor = self.app.search.blip_row(blip.id) or 0
        self.selected_blip = blip
        self.action_cursor = 0
        self.screen = Screen.BLIP_ACTIONS

    async def _details_key(self, key: str) -> None:
        if key in ("escape", "enter"):
            if self.screen is Screen.BLIP_DETAILS:
                self.screen = Screen.BLIP_ACTIONS
            else:
                self.screen = Screen.ADR_ACTIONS

    # -- Edit forms -------------------------------------------------------

    async def _form_key(self, form: EditForm, key: str, save, leave) -> None:
        if form.editing:
            if key == "enter":
                form.commit_edit()
            elif key == "escape":
                form.abort_edit()
            elif key == "left":
                form.cycle(-1)
            elif key == "right":
                form.cycle(1)
            elif key == "backspace":
                form.backspace()
            elif is_text_key(key):
                form.type_char(key)
            return
        if key == "up":
            form.move(-1)
        elif key == "down":
            form.move(1)
        elif key == "escape":
            leave()
        elif key == "enter":
            if form.on_save():
                await save()
            else:
                form.begin_edit()

    async def _edit_blip_key(self, key: str) -> None:
        def leave():
            self.blip_form = None
            self.screen = Screen.VIEW_BLIPS

        await self._form_key(self.blip_form, key, self.save_blip, leave)

    async def _edit_adr_key(self, key: str) -> None:
        def leave():
            self.adr_form = None
            self.screen = Screen.VIEW_ADRS

        await self._form_key(self.adr_form, key, self.save_adr, leave)

    async def save_blip(self) -> None:
        app = self.app
        form = self.blip_form
        previous = form.original[BlipField.NAME]
        relinked: list[Adr] = []
        try:
            await app.store.update_blip(form.record_id, form.to_update())
            saved = await app.store.get_blip(form.record_id)
            if saved.name != previous:
                for adr in await app.store.list_adrs(previous):
                    await app.store.update_adr(adr.id, AdrUpdate(blip_name=saved.name))
                    relinked.append(await app.store.get_adr(adr.id))
            await app.reload_blips()
            if relinked:
                await app.reload_adrs()
        except NotFound as exc:
            app.notify(f"Failed to update blip: {exc}")
            self.blip_form = None
            await app.reload_blips()
            self.screen = Screen.VIEW_BLIPS
            return
        except RadarError as exc:
            app.notify(f"Failed to update blip: {exc}", SAVE_NOTICE_SECONDS)
            return
        self.blip_form = BlipEditForm.from_blip(saved)
        self.blip_form.cursor = form.cursor
        self.selected_blip = saved
        try:
            app.mirror.write_blip_mirror(saved, previous_name=previous)
            for adr in relinked:
                app.mirror.write_adr_mirror(adr)
        except MirrorError as exc:
            app.notify(f"Blip saved to store, but file sync failed: {exc}",
                       SAVE_NOTICE_SECONDS)
            return
        app.notify("Blip updated successfully", SAVE_NOTICE_SECONDS)

    async def save_adr(self) -> None:
        app = self.app
        form = self.adr_form
        previous = form.original[AdrField.TITLE]
        try:
            await app.store.update_adr(form.record_id, form.to_update())
            saved = await app.store.get_adr(form.record_id)
            await app.reload_adrs()
        except NotFound as exc:
            app.notify(f"Failed to update ADR: {exc}")
            self.adr_form = None
            await app.reload_adrs()
            self.screen = Screen.VIEW_ADRS
            return
        except RadarError as exc:
            app.notify(f"Failed to update ADR: {exc}", SAVE_NOTICE_SECONDS)
            return
        self.adr_form = AdrEditForm.from_adr(saved)
        self.adr_form.cursor = form.cursor
        self.selected_adr = saved
        try:
            app.mirror.write_adr_mirror(saved, previous_title=previous)
        except MirrorError as exc:
            app.notify(f"ADR saved to store, but file sync failed: {exc}",
                       SAVE_NOTICE_SECONDS)
            return
        app.notify("ADR updated successfully", SAVE_NOTICE_SECONDS)


# ════════════════════════════════════════════════════════════════════════
#  Application State
# ════════════════════════════════════════════════════════════════════════


class AppState:
    """Everything one radar session holds, passed by reference."""

    def __init__(self, store: CatalogStore, mirror: MarkdownMirror,
                 settings: Optional[Settings] = None,
                 today: Callable[[], str] = utc_today):
        self.store = store
        self.mirror = mirror
        self.settings = settings
        self.search = SearchIndex()
        self.wizard = EntryWizard(store)
        self.pipeline = GenerationPipeline(store, mirror, today)
        self.navigator = Navigator(self)
        self.stats = CatalogStats()
        self.notification = ""
        self.notification_until = 0.0
        self.notification_task = None
        self.input_lock = asyncio.Lock()
        self.on_notify: Optional[Callable[[str, float], None]] = None

    @property
    def screen(self) -> Screen:
        return self.navigator.screen

    async def startup(self) -> None:
        await self.reload_blips()
        await self.reload_adrs()
        await self.refresh_stats()

    async def reload_blips(self) -> None:
        self.search.load(blips=await self.store.list_blips())
        self.navigator.blip_cursor = clamp(
            self.navigator.blip_cursor, len(self.search.blip_hits))

    async def reload_adrs(self) -> None:
        self.search.load(adrs=await self.store.list_adrs(self.navigator.adr_filter))
        self.navigator.adr_cursor = clamp(
            self.navigator.adr_cursor, len(self.search.adr_hits))

    async def refresh_stats(self) -> None:
        self.stats = await load_stats(self.store)

    def notify(self, message: str, duration: float = SAVE_NOTICE_SECONDS) -> None:
        self.notification = message
        self.notification_until = time.monotonic() + duration
        if self.on_notify is not None:
            self.on_notify(message, duration)

    def current_notice(self, now: Optional[float] = None) -> str:
        """The transient notice, or "" once its delay has passed."""
        now = time.monotonic() if now is None else now
        if self.notification and now >= self.notification_until:
            self.notification = ""
        return self.notification

    def status_text(self) -> str:
        return self.current_notice() or self.wizard.message

    async def dispatch(self, key: str) -> None:
        """Process one key to completion, including any generation it triggers."""
        async with self.input_lock:
            try:
                await self.navigator.handle_key(key)
                outcome = await self.pipeline.run(self)
                if outcome is not None and outcome.ok:
                    await self.refresh_stats()
            except RadarError as exc:
                logger.warning("Key %r failed: %s", key, exc)
                self.notify(f"Error: {exc}")


# ════════════════════════════════════════════════════════════════════════
#  Rendering
# ════════════════════════════════════════════════════════════════════════

_SCREEN_TITLES = {
    Screen.MAIN: "Tech Radar",
    Screen.VIEW_BLIPS: "Blips",
    Screen.VIEW_ADRS: "ADRs",
    Screen.BLIP_ACTIONS: "Blip",
    Screen.BLIP_DETAILS: "Blip details",
    Screen.EDIT_BLIP: "Edit blip",
    Screen.ADR_ACTIONS: "ADR",
    Screen.ADR_DETAILS: "ADR details",
    Screen.EDIT_ADR: "Edit ADR",
}

_WIZARD_PROMPTS = {
    WizardState.WAITING_FOR_COMMAND: "New entry:",
    WizardState.ENTERING_NAME: "Name:",
    WizardState.CHOOSING_QUADRANT: "Quadrant:",
    WizardState.CHOOSING_RING: "Ring:",
    WizardState.CHOOSING_ADR_STATUS: "ADR status:",
    WizardState.GENERATING: "Generating file...",
    WizardState.COMPLETED: "Done.",
}

_HINTS = {
    Screen.MAIN: [("a", "ADR"), ("b", "Blip"), ("l", "Blips"), ("v", "ADRs"), ("q", "Quit")],
    Screen.VIEW_BLIPS: [("enter", "Open"), ("/", "Search"), ("esc", "Back")],
    Screen.VIEW_ADRS: [("enter", "Open"), ("/", "Search"), ("esc", "Back")],
    Screen.BLIP_ACTIONS: [("enter", "Select"), ("esc", "Back")],
    Screen.ADR_ACTIONS: [("enter", "Select"), ("esc", "Back")],
    Screen.BLIP_DETAILS: [("esc", "Back")],
    Screen.ADR_DETAILS: [("esc", "Back")],
    Screen.EDIT_BLIP: [("enter", "Edit/Save"), ("←→", "Cycle"), ("esc", "Back")],
    Screen.EDIT_ADR: [("enter", "Edit/Save"), ("←→", "Cycle"), ("esc", "Back")],
}


def _menu(labels, cursor: int) -> list:
    result = []
    for i, label in enumerate(labels):
        if i == cursor:
            result.append(("[SetCursorPosition]", ""))
            result.append(("class:select-list.selected", f"  {label}\n"))
        else:
            result.append(("", f"  {label}\n"))
    return result


def render_main(state: AppState) -> list:
    wizard = state.wizard
    result = [("class:accent bold", f" {_WIZARD_PROMPTS[wizard.state]}\n\n")]
    if wizard.state is WizardState.ENTERING_NAME:
        kind = wizard.kind.label() if wizard.kind else ""
        result.append(("class:form-label", f"  {kind} "))
        result.append(("class:input", f" {wizard.input}█ \n"))
    elif wizard.options():
        if wizard.draft.name:
            result.append(("class:form-label", f"  {wizard.draft.name}\n\n"))
        result.extend(_menu([o.label() for o in wizard.options()], wizard.cursor))
    elif wizard.state is WizardState.COMPLETED and wizard.last_path:
        result.append(("", f"  {wizard.last_path}\n"))
        result.append(("class:hint", "  enter/n: new entry\n"))
    return result


def render_stats(state: AppState) -> list:
    stats = state.stats
    result = [("class:accent bold", " Catalog\n\n")]
    result.append(("", f"  Blips  {stats.total_blips}\n"))
    result.append(("", f"  ADRs   {stats.total_adrs}\n"))
    if stats.adr_coverage is not None:
        result.append(("", f"  ADR coverage {stats.adr_coverage:.1f}%\n"))
    result.append(("class:form-label", "\n  By quadrant\n"))
    for name, count in stats.by_quadrant.items():
        result.append(("", f"  {name:<11} {'■' * count} {count}\n"))
    result.append(("class:form-label", "\n  By ring\n"))
    for name, count in stats.by_ring.items():
        result.append(("", f"  {name:<11} {'■' * count} {count}\n"))
    if stats.recent:
        result.append(("class:form-label", "\n  Recent\n"))
        for blip in stats.recent:
            result.append(("", f"  {blip.created}  {blip.name}\n"))
    return result


def _blip_row(blip: Blip) -> str:
    ring = blip.ring.label() if blip.ring else "-"
    quadrant = blip.quadrant.label() if blip.quadrant else "-"
    adr = "ADR" if blip.has_adr else ""
    return f"{blip.id:>4}  {blip.name:<28} {quadrant:<11} {ring:<7} {adr}"


def _adr_row(adr: Adr) -> str:
    return (f"{adr.id:>4}  {adr.title:<32} {adr.status.label():<11} "
            f"{adr.blip_name or '-'}")


def render_list(state: AppState) -> list:
    nav = state.navigator
    search = state.search
    if nav.screen is Screen.VIEW_BLIPS:
        rows = [_blip_row(b) for b in search.visible_blips()]
        cursor = nav.blip_cursor
    else:
        rows = [_adr_row(a) for a in search.visible_adrs()]
        cursor = nav.adr_cursor
    result = []
    if nav.searching or search.query:
        style = "class:input" if nav.searching else "class:hint"
        result.append((style, f" /{search.query}\n\n"))
    if nav.screen is Screen.VIEW_ADRS and nav.adr_filter:
        result.append(("class:hint", f" for blip {nav.adr_filter}\n\n"))
    if not rows:
        result.append(("class:select-list.empty", "  (empty)\n"))
        return result
    return result + _menu(rows, cursor)


def render_blip_details(blip: Blip) -> list:
    lines = [
        ("Name", blip.name),
        ("Ring", blip.ring.label() if blip.ring else "(none)"),
        ("Quadrant", blip.quadrant.label() if blip.quadrant else "(none)"),
        ("Tag", blip.tag or "(none)"),
        ("Description", blip.description or "(none)"),
        ("Created", blip.created),
        ("ADR", str(blip.adr_id) if blip.adr_id is not None else
         ("yes" if blip.has_adr else "no")),
    ]
    return _detail_lines(lines)


def render_adr_details(adr: Adr) -> list:
    return _detail_lines([
        ("Title", adr.title),
        ("Status", adr.status.label()),
        ("Blip", adr.blip_name or "(unlinked)"),
        ("Date", adr.timestamp),
    ])


def _detail_lines(lines) -> list:
    result = []
    for label, value in lines:
        result.append(("class:form-label", f"  {label:<12}"))
        result.append(("", f" {value}\n"))
    return result


def render_form(form: EditForm) -> list:
    result = []
    for i, f in enumerate(form.FIELDS):
        label = form.LABELS[f]
        selected = i == form.cursor
        if f.value == "save":
            style = "class:select-list.selected" if selected else "class:accent"
            result.append((style, f"\n  [ {label} ]\n"))
            continue
        value = form.display(f)
        if selected and form.editing:
            style = "class:input"
            if f in form.CHOICES:
                value = f"← {value} →"
        elif selected:
            style = "class:select-list.selected"
        else:
            style = ""
        result.append(("class:form-label", f"  {label:<12}"))
        result.append((style, f" {value} \n"))
    return result


def render_body(state: AppState) -> list:
    nav = state.navigator
    screen = nav.screen
    if screen in _LIST_SCREENS:
        return render_list(state)
    if screen in (Screen.BLIP_ACTIONS, Screen.ADR_ACTIONS):
        record = nav.selected_blip if screen is Screen.BLIP_ACTIONS else nav.selected_adr
        title = record.name if isinstance(record, Blip) else record.title
        return ([("class:accent bold", f" {title}\n\n")]
                + _menu(nav.action_labels(), nav.action_cursor))
    if screen is Screen.BLIP_DETAILS:
        return render_blip_details(nav.selected_blip)
    if screen is Screen.ADR_DETAILS:
        return render_adr_details(nav.selected_adr)
    if screen is Screen.EDIT_BLIP and nav.blip_form:
        return render_form(nav.blip_form)
    if screen is Screen.EDIT_ADR and nav.adr_form:
        return render_form(nav.adr_form)
    return []


def render_hints(state: AppState) -> list:
    result = []
    for key, desc in _HINTS[state.screen]:
        result.append(("class:accent bold", f" {key}"))
        result.append(("class:hint", f" {desc} "))
    return result


# ════════════════════════════════════════════════════════════════════════
#  Application
# ════════════════════════════════════════════════════════════════════════

# prompt_toolkit key names to the names the core understands
_KEY_NAMES = {
    "up": "up",
    "down": "down",
    "left": "left",
    "right": "right",
    "c-m": "enter",
    "escape": "escape",
    "c-h": "backspace",
    "pageup": "pageup",
    "pagedown": "pagedown",
    "home": "home",
    "end": "end",
}


def show_notification(state, message, duration=SAVE_NOTICE_SECONDS):
    """Redraw now and again once the notice has expired."""
    app = get_app()
    app.invalidate()
    if state.notification_task:
        state.notification_task.cancel()

    async def _clear():
        await asyncio.sleep(duration)
        if state.notification == message:
            state.notification = ""
            get_app().invalidate()

    state.notification_task = asyncio.ensure_future(_clear())


def create_app(state: AppState):
    state.on_notify = lambda message, duration: show_notification(
        state, message, duration)

    # ── Layout ───────────────────────────────────────────────────────

    def get_title_text():
        title = _SCREEN_TITLES[state.screen]
        return [("class:title bold", f" {title}"),
                ("class:hint", f"  {state.settings.db_path.name if state.settings else ''}")]

    def get_status_text():
        return [("class:status", f" {state.status_text()}")]

    def get_body():
        if state.screen is Screen.MAIN:
            return VSplit([
                Window(FormattedTextControl(lambda: render_main(state)),
                       style="class:select-list"),
                Window(width=1, char="│", style="class:hint"),
                Window(FormattedTextControl(lambda: render_stats(state)), width=40),
            ])
        return Window(FormattedTextControl(lambda: render_body(state)),
                      style="class:select-list", wrap_lines=False)

    root = HSplit([
        Window(FormattedTextControl(get_title_text), height=1),
        Window(height=1, char="─", style="class:hint"),
        DynamicContainer(get_body),
        Window(FormattedTextControl(lambda: render_hints(state)), height=1,
               align=WindowAlign.LEFT),
        Window(FormattedTextControl(get_status_text), height=1, style="class:status"),
    ])

    # ── Key bindings ─────────────────────────────────────────────────

    kb = KeyBindings()

    async def _dispatch(event, key):
        await state.dispatch(key)
        if state.navigator.should_quit:
            event.app.exit()
        else:
            event.app.invalidate()

    def _bind(pt_key, name):
        @kb.add(pt_key, eager=(pt_key == "escape"))
        def _(event):
            event.app.create_background_task(_dispatch(event, name))

    for pt_key, name in _KEY_NAMES.items():
        _bind(pt_key, name)

    @kb.add(Keys.Any)
    def _(event):
        if is_text_key(event.data):
            event.app.create_background_task(_dispatch(event, event.data))

    @kb.add("c-q")
    @kb.add("c-c")
    def _(event):
        event.app.exit()

    # ── Style ────────────────────────────────────────────────────────

    style = PtStyle.from_dict({
        "": "#e0e0e0 bg:#2a2a2a",
        "title": "#e0e0e0",
        "status": "#8a8a8a bg:#333333",
        "hint": "#777777",
        "accent": "#e0af68",
        "input": "bg:#333333 #e0e0e0",
        "select-list": "",
        "select-list.selected": "bg:#444444",
        "select-list.empty": "#777777",
        "form-label": "#aaaaaa",
    })

    # ── Build Application ────────────────────────────────────────────

    app = Application(
        layout=Layout(root),
        key_bindings=kb,
        style=style,
        full_screen=True,
        mouse_support=False,
    )
    app.ttimeoutlen = 0.05

    return app


async def run_tui(settings: Settings, pinned: tuple = ()) -> None:
    async with CatalogStore(settings.db_path) as store:
        settings = apply_stored_settings(settings, await store.get_settings(), pinned)
        mirror = MarkdownMirror(settings.blips_dir, settings.adrs_dir, settings.author)
        state = AppState(store, mirror, settings)
        await state.startup()
        await create_app(state).run_async()


async def collect_stats(settings: Settings) -> CatalogStats:
    async with CatalogStore(settings.db_path) as store:
        return await load_stats(store)


def format_stats(stats: CatalogStats) -> str:
    lines = [
        "",
        "Tech Radar Stats",
        "=================",
        f"Total blips: {stats.total_blips}",
        f"Total ADRs: {stats.total_adrs}",
    ]
    if stats.adr_coverage is not None:
        lines.append(f"ADR coverage: {stats.adr_coverage:.1f}%")
    lines += ["", "Blips by Quadrant:"]
    lines += [f"- {name}: {count}" for name, count in stats.by_quadrant.items()]
    lines += ["", "Blips by Ring:"]
    lines += [f"- {name}: {count}" for name, count in stats.by_ring.items()]
    lines += ["", "Recent Blips:"]
    for blip in stats.as_dict()["recent_blips"]:
        lines.append(f"- {blip['name']} | {blip['quadrant']} | {blip['ring']} | "
                     f"{blip['created']}")
    return "\n".join(lines)


# ════════════════════════════════════════════════════════════════════════
#  Entry point
# ════════════════════════════════════════════════════════════════════════

cli = typer.Typer(
    name="radar",
    help="Technology radar and ADR catalog.",
    no_args_is_help=False,
    add_completion=False,
    rich_markup_mode=None,
)


@cli.callback(invoke_without_command=True)
def main_callback(
    ctx: typer.Context,
    db: Annotated[Optional[Path], typer.Option(
        "--db", help="SQLite database file",
    )] = None,
    blip_dir: Annotated[Optional[Path], typer.Option(
        "--blip-dir", help="Directory for blip markdown files",
    )] = None,
    adr_dir: Annotated[Optional[Path], typer.Option(
        "--adr-dir", help="Directory for ADR markdown files",
    )] = None,
    headless: Annotated[bool, typer.Option(
        "--headless", help="Print catalog statistics and exit",
    )] = False,
    output_json: Annotated[bool, typer.Option(
        "--json", "-j", help="With --headless, print statistics as JSON",
    )] = False,
    verbose: Annotated[bool, typer.Option(
        "--verbose", "-v", help="Debug-level logging",
    )] = False,
):
    """Technology radar and ADR catalog."""
    settings = load_settings(db=db, blip_dir=blip_dir, adr_dir=adr_dir)
    pinned = tuple(key for key, value in (
        (SETTING_BLIP_DIR, blip_dir), (SETTING_ADR_DIR, adr_dir)) if value)
    handler = configure_logging(settings.log_path, verbose)
    if handler is not None:
        ctx.call_on_close(lambda: release_logging(handler))
    ctx.obj = (settings, pinned)
    if ctx.invoked_subcommand is not None:
        return
    try:
        if headless:
            stats = asyncio.run(collect_stats(settings))
            if output_json:
                typer.echo(json.dumps(stats.as_dict(), indent=2))
            else:
                typer.echo(format_stats(stats))
            return
        asyncio.run(run_tui(settings, pinned))
    except RadarError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)


@cli.command("settings")
def settings_command(
    ctx: typer.Context,
    key: Annotated[Optional[str], typer.Argument(help="Setting key, e.g. BLIP_DIR")] = None,
    value: Annotated[Optional[str], typer.Argument(help="New value")] = None,
):
    """List stored settings, or set KEY to VALUE."""
    settings, _ = ctx.obj
    if key is not None and value is None:
        typer.echo("Error: Specify a value for the setting", err=True)
        raise typer.Exit(1)

    async def _run():
        async with CatalogStore(settings.db_path) as store:
            if key is not None:
                await store.set_setting(key, value)
            return await store.get_settings()

    try:
        stored = asyncio.run(_run())
    except RadarError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    if key is not None:
        typer.echo(f"{key} = {stored.get(key, '')}")
        return
    if not stored:
        typer.echo("No settings stored.")
        return
    for k, v in stored.items():
        typer.echo(f"{k} = {v}")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
