"""Persistence of video recording sessions and the segments that belong to them."""

from __future__ import annotations

import sqlite3
from datetime import datetime, timezone
from typing import Iterable, Optional

from livemix.connection import SQLConnection
from livemix.models import ZERO_TIME, Recording, VideoSegment, _from_db_time, _to_db_time, new_ulid
from livemix.sources import (
    _SEGMENT_COLUMNS,
    LiveStreamStore,
    NotFoundError,
    StoreError,
    _placeholders,
    _segment_from_row,
)

_RECORDING_COLUMNS = "id, alias, description, source_id, start_ts, end_ts, active"
_UNASSOCIATED = (
    "id NOT IN (SELECT DISTINCT segment_id FROM segment_to_recording_association)"
)


def _recording_from_row(row: sqlite3.Row) -> Recording:
    return Recording(
        id=row["id"],
        alias=row["alias"],
        description=row["description"],
        source_id=row["source_id"],
        start_time=_from_db_time(row["start_ts"]),
        end_time=_from_db_time(row["end_ts"]),
        active=row["active"],
    )


def _recording_values(entry: Recording) -> tuple:
    return (
        entry.id,
        entry.alias,
        entry.description,
        entry.source_id,
        _to_db_time(entry.start_time),
        _to_db_time(entry.end_time),
        entry.active,
    )


def _validate_recording(entry: Recording) -> None:
    if not entry.id:
        raise StoreError("recording session requires an ID")
    if not entry.source_id:
        raise StoreError("recording session requires a source ID")


class PersistenceManager(LiveStreamStore):
    """One transaction of work on sources, live segments, recordings and recorded segments."""

    # ------------------------------------------------------------------
    # Recording sessions

    def define_recording_session(
        self,
        source_id: str,
        alias: Optional[str],
        description: Optional[str],
        start_time: datetime,
    ) -> str:
        """Create a new active recording session; return its ID."""
        with self._operation() as session:
            entry = Recording(
                id=new_ulid(),
                source_id=source_id,
                alias=alias,
                description=description,
                start_time=start_time,
                active=1,
            )
            _validate_recording(entry)
            session.execute(
                f"INSERT INTO recording_sessions ({_RECORDING_COLUMNS}) "
                f"VALUES ({_placeholders(7)})",
                _recording_values(entry),
            )
            return entry.id

    def record_known_recording_session(self, entry: Recording) -> None:
        """Store a recording session that already has an ID."""
        with self._operation() as session:
            _validate_recording(entry)
            session.execute(
                f"INSERT INTO recording_sessions ({_RECORDING_COLUMNS}) "
                f"VALUES ({_placeholders(7)})",
                _recording_values(entry),
            )

    def _fetch_recording(self, column: str, value: str) -> Recording:
        with self._operation() as session:
            row = session.execute(
                f"SELECT {_RECORDING_COLUMNS} FROM recording_sessions WHERE {column} = ? "
                "ORDER BY id LIMIT 1",
                (value,),
            ).fetchone()
            if row is None:
                raise NotFoundError(f"no recording session with {column} '{value}'")
            return _recording_from_row(row)

    def get_recording_session(self, recording_id: str) -> Recording:
        """Fetch a recording session by ID."""
        return self._fetch_recording("id", recording_id)

    def get_recording_session_by_alias(self, alias: str) -> Recording:
        """Fetch a recording session by alias."""
        return self._fetch_recording("alias", alias)

    def list_recording_sessions(self) -> list[Recording]:
        """Return every recording session, earliest start first."""
        with self._operation() as session:
            rows = session.execute(
                f"SELECT {_RECORDING_COLUMNS} FROM recording_sessions ORDER BY start_ts"
            ).fetchall()
            return [_recording_from_row(row) for row in rows]

    def list_recording_sessions_of_source(
        self, source_id: str, active: bool
    ) -> list[Recording]:
        """Return the recording sessions of a source; only active ones if asked."""
        where = "source_id = ?"
        if active:
            where += " AND active = 1"
        with self._operation() as session:
            rows = session.execute(
                f"SELECT {_RECORDING_COLUMNS} FROM recording_sessions WHERE {where} "
                "ORDER BY start_ts",
                (source_id,),
            ).fetchall()
            return [_recording_from_row(row) for row in rows]

    def _update_recording(self, recording_id: str, changes: dict) -> None:
        with self._operation() as session:
            if not changes:
                return
            assignments = ", ".join(f"{column} = ?" for column in changes)
            session.execute(
                f"UPDATE recording_sessions SET {assignments} WHERE id = ?",
                (*changes.values(), recording_id),
            )

    def mark_end_of_recording_session(self, recording_id: str, end_time: datetime) -> None:
        """Mark a recording session complete at the given time."""
        changes: dict = {"active": -1}
        if end_time != ZERO_TIME:
            changes["end_ts"] = _to_db_time(end_time)
        self._update_recording(recording_id, changes)

    def update_recording_session(self, new_setting: Recording) -> None:
        """Update the alias and description; unset fields stay as they are."""
        changes: dict = {}
        if new_setting.alias is not None:
            changes["alias"] = new_setting.alias
        if new_setting.description is not None:
            changes["description"] = new_setting.description
        self._update_recording(new_setting.id, changes)

    def delete_recording_session(self, recording_id: str) -> None:
        """Delete a recording session and its links to segments."""
        with self._operation() as session:
            row = session.execute(
                "SELECT id FROM recording_sessions WHERE id = ?", (recording_id,)
            ).fetchone()
            if row is None:
                raise NotFoundError(f"no recording session with id '{recording_id}'")
            session.execute(
                "DELETE FROM segment_to_recording_association WHERE recording_id = ?",
                (recording_id,),
            )
            session.execute("DELETE FROM recording_sessions WHERE id = ?", (recording_id,))

    # ------------------------------------------------------------------
    # Recorded segments

    def register_recording_segments(
        self, recording_ids: Iterable[str], segments: Iterable[VideoSegment]
    ) -> None:
        """Store segments and link each of them to every given recording session."""
        recording_ids = list(recording_ids)
        segments = list(segments)
        with self._operation() as session:
            if recording_ids:
                rows = session.execute(
                    f"SELECT id FROM recording_sessions "
                    f"WHERE id IN ({_placeholders(len(recording_ids))})",
                    recording_ids,
                ).fetchall()
                missing = set(recording_ids) - {row["id"] for row in rows}
                if missing:
                    raise NotFoundError(
                        f"unknown recording sessions: {', '.join(sorted(missing))}"
                    )
            session.executemany(
                f"INSERT INTO recorded_segments ({_SEGMENT_COLUMNS}) "
                f"VALUES ({_placeholders(8)}) ON CONFLICT DO NOTHING",
                [
                    (
                        seg.id,
                        seg.source_id,
                        seg.segment.name,
                        _to_db_time(seg.segment.start_time),
                        _to_db_time(seg.segment.end_time),
                        seg.segment.length,
                        seg.segment.uri,
                        None,
                    )
                    for seg in segments
                ],
            )
            created_at = _to_db_time(datetime.now(timezone.utc))
            session.executemany(
                "INSERT INTO segment_to_recording_association "
                "(segment_id, recording_id, created_at) VALUES (?, ?, ?) "
                "ON CONFLICT DO NOTHING",
                [
                    (seg.id, recording_id, created_at)
                    for seg in segments
                    for recording_id in recording_ids
                ],
            )

    def _query_recorded(self, where: str, params: tuple, suffix: str = "") -> list[VideoSegment]:
        with self._operation() as session:
            rows = session.execute(
                f"SELECT {_SEGMENT_COLUMNS} FROM recorded_segments WHERE {where} {suffix}",
                params,
            ).fetchall()
            return [_segment_from_row(row) for row in rows]

    def _first_recorded(self, column: str, value: str) -> VideoSegment:
        with self._operation() as session:
            row = session.execute(
                f"SELECT {_SEGMENT_COLUMNS} FROM recorded_segments WHERE {column} = ? "
                "ORDER BY id LIMIT 1",
                (value,),
            ).fetchone()
            if row is None:
                raise NotFoundError(f"no recorded segment with {column} '{value}'")
            return _segment_from_row(row)

    def get_recording_segment(self, segment_id: str) -> VideoSegment:
        """Fetch a recorded segment by ID."""
        return self._first_recorded("id", segment_id)

    def get_recording_segment_by_name(self, name: str) -> VideoSegment:
        """Fetch a recorded segment by name."""
        return self._first_recorded("name", name)

    def list_all_recording_segments(self) -> list[VideoSegment]:
        """Return every recorded segment, oldest end time first."""
        return self._query_recorded("1 = 1", (), "ORDER BY end_ts")

    def list_all_segments_of_recording(self, recording_id: str) -> list[VideoSegment]:
        """Return the segments of one recording session, oldest end time first."""
        return self._query_recorded(
            "id IN (SELECT segment_id FROM segment_to_recording_association "
            "WHERE recording_id = ?)",
            (recording_id,),
            "ORDER BY end_ts",
        )

    def delete_unassociated_recording_segments(self) -> list[VideoSegment]:
        """Delete recorded segments linked to no recording session; return them."""
        with self._operation() as session:
            rows = session.execute(
                f"SELECT {_SEGMENT_COLUMNS} FROM recorded_segments WHERE {_UNASSOCIATED} "
                "ORDER BY end_ts"
            ).fetchall()
            removed = [_segment_from_row(row) for row in rows]
            if removed:
                session.execute(
                    f"DELETE FROM recorded_segments "
                    f"WHERE id IN ({_placeholders(len(removed))})",
                    [seg.id for seg in removed],
                )
            return removed


def new_persistence_manager(connection: SQLConnection) -> PersistenceManager:
    """Start a new unit of database work on the connection."""
    return PersistenceManager(connection)