"""Database utilities for the mirrored calendar and per-user channel state."""

import logging
import sqlite3
import time
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import AsyncIterator, Iterable

import aiosqlite

from calmirror.core.exceptions import StoreUnavailable
from calmirror.core.models import (
    ChannelDescriptor,
    MirroredEvent,
    User,
    from_timestamp,
    to_timestamp,
)

logger = logging.getLogger(__name__)


def _row_to_user(row: aiosqlite.Row) -> User:
    channel = None
    if row["channel_id"] and row["channel_resource_id"]:
        channel = ChannelDescriptor(
            channel_id=row["channel_id"],
            resource_id=row["channel_resource_id"],
            expiration=from_timestamp(row["channel_expiration"] or 0),
        )
    return User(
        email=row["email"],
        access_token=row["access_token"],
        refresh_token=row["refresh_token"],
        name=row["name"],
        channel=channel,
    )


def _row_to_event(row: aiosqlite.Row) -> MirroredEvent:
    return MirroredEvent(
        user_email=row["user_email"],
        remote_event_id=row["remote_event_id"],
        title=row["title"],
        description=row["description"],
        location=row["location"],
        start_time=from_timestamp(row["start_time"]),
        end_time=from_timestamp(row["end_time"]),
    )


class EventStore:
    """
    Manages the SQLite database backing the calendar mirror.

    Stores users (with their bearer credential and active push channel) and
    mirrored events keyed by ``(user_email, remote_event_id)``. Each write is a
    single atomic statement; nothing here spans more than one upsert.
    All sqlite failures surface as ``StoreUnavailable``.
    """

    def __init__(self, db_path: Path):
        """
        Initialize the store.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[aiosqlite.Connection]:
        try:
            async with aiosqlite.connect(self.db_path) as db:
                db.row_factory = aiosqlite.Row
                yield db
        except sqlite3.Error as e:
            logger.error(f"Event store failure ({self.db_path}): {e}")
            raise StoreUnavailable(f"Event store unavailable: {e}") from e

    async def initialize(self) -> None:
        """Create tables and indexes if they don't exist."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        async with self._connect() as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS users (
                    email TEXT PRIMARY KEY,
                    name TEXT,
                    access_token TEXT,
                    refresh_token TEXT,
                    channel_id TEXT,
                    channel_resource_id TEXT,
                    channel_expiration REAL,
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL
                )
                """
            )
            await db.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_users_channel_id
                ON users(channel_id)
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS mirrored_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_email TEXT NOT NULL,
                    remote_event_id TEXT NOT NULL,
                    title TEXT NOT NULL,
                    description TEXT,
                    start_time REAL NOT NULL,
                    end_time REAL NOT NULL,
                    location TEXT,
                    updated_at REAL NOT NULL,
                    UNIQUE(user_email, remote_event_id)
                )
                """
            )
            await db.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_events_user_start
                ON mirrored_events(user_email, start_time)
                """
            )
            await db.commit()
            logger.debug(f"Event store initialized at {self.db_path}")

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def get_user(self, email: str) -> User | None:
        """
        Get a user by email.

        Returns:
            User or None if not found
        """
        async with self._connect() as db:
            async with db.execute("SELECT * FROM users WHERE email = ?", (email,)) as cursor:
                row = await cursor.fetchone()
                return _row_to_user(row) if row else None

    async def find_user_by_channel_id(self, channel_id: str) -> User | None:
        """
        Resolve the owner of a push channel.

        Args:
            channel_id: Channel identifier carried by the notification

        Returns:
            User or None if no user currently owns the channel
        """
        async with self._connect() as db:
            async with db.execute(
                "SELECT * FROM users WHERE channel_id = ?",
                (channel_id,),
            ) as cursor:
                row = await cursor.fetchone()
                return _row_to_user(row) if row else None

    async def upsert_user(
        self,
        email: str,
        access_token: str | None,
        refresh_token: str | None = None,
        name: str | None = None,
    ) -> User:
        """
        Create a user on first sign-in or replace the credential on later ones.

        Channel fields are never touched here.
        """
        now = time.time()
        async with self._connect() as db:
            await db.execute(
                """
                INSERT INTO users (email, name, access_token, refresh_token, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(email) DO UPDATE SET
                    name = COALESCE(excluded.name, users.name),
                    access_token = excluded.access_token,
                    refresh_token = COALESCE(excluded.refresh_token, users.refresh_token),
                    updated_at = excluded.updated_at
                """,
                (email, name, access_token, refresh_token, now, now),
            )
            await db.commit()
        logger.debug(f"Upserted user credential: {email}")
        user = await self.get_user(email)
        if user is None:
            raise StoreUnavailable(f"User {email} missing right after upsert")
        return user

    async def save_user_channel(self, email: str, channel: ChannelDescriptor | None) -> None:
        """
        Persist (or clear, with ``None``) the user's active channel descriptor.

        Only the subscription manager calls this.
        """
        values = (
            (channel.channel_id, channel.resource_id, to_timestamp(channel.expiration))
            if channel
            else (None, None, None)
        )
        async with self._connect() as db:
            await db.execute(
                """
                UPDATE users
                SET channel_id = ?, channel_resource_id = ?, channel_expiration = ?, updated_at = ?
                WHERE email = ?
                """,
                (*values, time.time(), email),
            )
            await db.commit()
        logger.debug(f"Saved channel for {email}: {channel.channel_id if channel else None}")

    async def list_users(self) -> list[User]:
        """Get all users."""
        async with self._connect() as db:
            async with db.execute("SELECT * FROM users ORDER BY email") as cursor:
                rows = await cursor.fetchall()
                return [_row_to_user(row) for row in rows]

    async def list_users_with_channels_expiring_before(self, deadline: datetime) -> list[User]:
        """Get users whose active channel expires before ``deadline``."""
        async with self._connect() as db:
            async with db.execute(
                """
                SELECT * FROM users
                WHERE channel_id IS NOT NULL AND channel_expiration < ?
                ORDER BY channel_expiration
                """,
                (to_timestamp(deadline),),
            ) as cursor:
                rows = await cursor.fetchall()
                return [_row_to_user(row) for row in rows]

    # ------------------------------------------------------------------
    # Mirrored events
    # ------------------------------------------------------------------

    async def upsert_mirrored_event(self, event: MirroredEvent) -> None:
        """
        Create or overwrite a mirrored event on its merge key.

        Every mirrored field is replaced, so absent optional fields are
        cleared rather than left stale.
        """
        async with self._connect() as db:
            await db.execute(
                """
                INSERT INTO mirrored_events
                (user_email, remote_event_id, title, description, start_time, end_time, location, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_email, remote_event_id) DO UPDATE SET
                    title = excluded.title,
                    description = excluded.description,
                    start_time = excluded.start_time,
                    end_time = excluded.end_time,
                    location = excluded.location,
                    updated_at = excluded.updated_at
                """,
                (
                    event.user_email,
                    event.remote_event_id,
                    event.title,
                    event.description,
                    to_timestamp(event.start_time),
                    to_timestamp(event.end_time),
                    event.location,
                    time.time(),
                ),
            )
            await db.commit()

    async def get_mirrored_event(self, email: str, remote_event_id: str) -> MirroredEvent | None:
        """Get a single mirrored event by merge key."""
        async with self._connect() as db:
            async with db.execute(
                """
                SELECT * FROM mirrored_events
                WHERE user_email = ? AND remote_event_id = ?
                """,
                (email, remote_event_id),
            ) as cursor:
                row = await cursor.fetchone()
                return _row_to_event(row) if row else None

    async def list_mirrored_events(
        self, email: str, since: datetime | None = None
    ) -> list[MirroredEvent]:
        """
        Get a user's mirrored events ordered by start time.

        Args:
            email: Owning user
            since: Only events starting at or after this instant
        """
        query = "SELECT * FROM mirrored_events WHERE user_email = ?"
        params: list = [email]
        if since is not None:
            query += " AND start_time >= ?"
            params.append(to_timestamp(since))
        query += " ORDER BY start_time, remote_event_id"

        async with self._connect() as db:
            async with db.execute(query, params) as cursor:
                rows = await cursor.fetchall()
                return [_row_to_event(row) for row in rows]

    async def count_mirrored_events(self, email: str | None = None) -> int:
        """Count mirrored events, for one user or overall."""
        async with self._connect() as db:
            if email is None:
                cursor = await db.execute("SELECT COUNT(*) FROM mirrored_events")
            else:
                cursor = await db.execute(
                    "SELECT COUNT(*) FROM mirrored_events WHERE user_email = ?",
                    (email,),
                )
            async with cursor:
                row = await cursor.fetchone()
                return row[0]

    async def delete_mirrored_event(self, email: str, remote_event_id: str) -> bool:
        """
        Delete one mirrored event.

        Returns:
            True if a row was removed
        """
        async with self._connect() as db:
            cursor = await db.execute(
                "DELETE FROM mirrored_events WHERE user_email = ? AND remote_event_id = ?",
                (email, remote_event_id),
            )
            await db.commit()
            deleted = cursor.rowcount > 0
        logger.debug(f"Deleted mirrored event {remote_event_id} for {email}: {deleted}")
        return deleted

    async def prune_mirrored_events(
        self, email: str, keep_ids: Iterable[str], since: datetime
    ) -> int:
        """
        Remove a user's events starting at or after ``since`` that are not in ``keep_ids``.

        Returns:
            Number of events removed
        """
        keep = set(keep_ids)
        count = 0
        async with self._connect() as db:
            async with db.execute(
                """
                SELECT remote_event_id FROM mirrored_events
                WHERE user_email = ? AND start_time >= ?
                """,
                (email, to_timestamp(since)),
            ) as cursor:
                rows = await cursor.fetchall()

            for row in rows:
                remote_event_id = row["remote_event_id"]
                if remote_event_id in keep:
                    continue
                await db.execute(
                    "DELETE FROM mirrored_events WHERE user_email = ? AND remote_event_id = ?",
                    (email, remote_event_id),
                )
                count += 1
                logger.debug(f"Pruned mirrored event {remote_event_id} for {email}")

            await db.commit()

        if count > 0:
            logger.info(f"Pruned {count} mirrored events for {email}")
        return count
