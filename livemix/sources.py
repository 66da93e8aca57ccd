"""Persistence of video sources and their live stream segments."""

from __future__ import annotations

import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Iterable, Iterator, Optional

from livemix.connection import SQLConnection
from livemix.models import (
    ZERO_TIME,
    Segment,
    VideoSegment,
    VideoSource,
    _from_db_time,
    _to_db_time,
    new_ulid,
)

_SOURCE_COLUMNS = (
    "id, name, target_segment_length, playlist_uri, description, streaming, "
    "req_resp_target_id, source_local_time"
)
_SEGMENT_COLUMNS = "id, source_id, name, start_ts, end_ts, length, uri, uploaded"


class StoreError(Exception):
    """A persistence operation failed."""


class NotFoundError(StoreError):
    """The requested record does not exist."""


def _placeholders(count: int) -> str:
    return ", ".join("?" * count)


def _source_from_row(row: sqlite3.Row) -> VideoSource:
    return VideoSource(
        id=row["id"],
        name=row["name"],
        target_segment_length=row["target_segment_length"],
        playlist_uri=row["playlist_uri"],
        description=row["description"],
        streaming=row["streaming"],
        req_resp_target_id=row["req_resp_target_id"],
        source_local_time=_from_db_time(row["source_local_time"]),
    )


def _segment_from_row(row: sqlite3.Row) -> VideoSegment:
    return VideoSegment(
        id=row["id"],
        source_id=row["source_id"],
        segment=Segment(
            name=row["name"],
            start_time=_from_db_time(row["start_ts"]),
            end_time=_from_db_time(row["end_ts"]),
            length=row["length"],
            uri=row["uri"],
        ),
        uploaded=row["uploaded"],
    )


def _segment_values(entry: VideoSegment) -> tuple:
    return (
        entry.id,
        entry.source_id,
        entry.segment.name,
        _to_db_time(entry.segment.start_time),
        _to_db_time(entry.segment.end_time),
        entry.segment.length,
        entry.segment.uri,
        entry.uploaded,
    )


def _validate_segment(entry: VideoSegment) -> None:
    if not entry.id:
        raise StoreError("video segment requires an ID")
    if not entry.source_id:
        raise StoreError("video segment requires a source ID")
    if not entry.segment.name:
        raise StoreError("video segment requires a name")


def _validate_source(entry: VideoSource) -> None:
    if not entry.name:
        raise StoreError("video source requires a name")
    if entry.target_segment_length <= 0:
        raise StoreError("video source target segment length must be positive")


class LiveStreamStore:
    """One transaction of work on video sources and live stream segments.

    The first failure is remembered; every later operation is refused and
    closing the store rolls the transaction back.
    """

    def __init__(self, connection: SQLConnection) -> None:
        self._connection = connection
        self._session = connection.new_transaction()
        self._error: Optional[BaseException] = None
        self._closed = False

    @property
    def error(self) -> Optional[BaseException]:
        """The error that occurred during this transaction, if any."""
        return self._error

    def ready(self) -> None:
        """Check that the database answers queries."""
        try:
            self._session.execute("SELECT id FROM video_sources LIMIT 1").fetchall()
        except sqlite3.Error as err:
            raise StoreError(str(err)) from err

    def close(self) -> None:
        """Commit the transaction, or roll it back if an error was recorded."""
        if self._closed:
            return
        self._closed = True
        if self._error is not None:
            self._connection.rollback(self._session)
        else:
            self._connection.commit(self._session)

    def __enter__(self) -> "LiveStreamStore":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc is not None and self._error is None:
            self._error = exc
        self.close()
        return False

    def mark_external_error(self, err: BaseException) -> None:
        """Record a failure outside SQL so that closing rolls back."""
        self._error = err

    @contextmanager
    def _operation(self) -> Iterator[sqlite3.Connection]:
        if self._closed:
            raise StoreError("sql operation can't continue on a closed store")
        if self._error is not None:
            raise StoreError(
                f"sql operation can't continue due to existing error '{self._error}'"
            )
        try:
            yield self._session
        except sqlite3.Error as err:
            wrapped = StoreError(str(err))
            self._error = wrapped
            raise wrapped from err
        except Exception as err:
            self._error = err
            raise

    # ------------------------------------------------------------------
    # Video sources

    def define_video_source(
        self,
        name: str,
        segment_len: int,
        playlist_uri: Optional[str] = None,
        description: Optional[str] = None,
    ) -> str:
        """Create a new video source that is not streaming; return its ID."""
        with self._operation() as session:
            entry = VideoSource(
                id=str(uuid.uuid4()),
                name=name,
                target_segment_length=segment_len,
                playlist_uri=playlist_uri,
                description=description,
                streaming=-1,
            )
            _validate_source(entry)
            session.execute(
                f"INSERT INTO video_sources ({_SOURCE_COLUMNS}) VALUES ({_placeholders(8)})",
                (
                    entry.id,
                    entry.name,
                    entry.target_segment_length,
                    entry.playlist_uri,
                    entry.description,
                    entry.streaming,
                    entry.req_resp_target_id,
                    _to_db_time(entry.source_local_time),
                ),
            )
            return entry.id

    def record_known_video_source(
        self,
        entry_id: str,
        name: str,
        segment_len: int,
        playlist_uri: Optional[str],
        description: Optional[str],
        streaming: int,
    ) -> None:
        """Insert a video source with a known ID, replacing all fields if it exists."""
        with self._operation() as session:
            session.execute(
                f"INSERT INTO video_sources ({_SOURCE_COLUMNS}) VALUES ({_placeholders(8)}) "
                "ON CONFLICT(id) DO UPDATE SET "
                "name = excluded.name, "
                "target_segment_length = excluded.target_segment_length, "
                "playlist_uri = excluded.playlist_uri, "
                "description = excluded.description, "
                "streaming = excluded.streaming, "
                "req_resp_target_id = excluded.req_resp_target_id, "
                "source_local_time = excluded.source_local_time",
                (
                    entry_id,
                    name,
                    segment_len,
                    playlist_uri,
                    description,
                    streaming,
                    None,
                    _to_db_time(ZERO_TIME),
                ),
            )

    def _fetch_source(self, column: str, value: str) -> VideoSource:
        with self._operation() as session:
            row = session.execute(
                f"SELECT {_SOURCE_COLUMNS} FROM video_sources WHERE {column} = ? "
                "ORDER BY id LIMIT 1",
                (value,),
            ).fetchone()
            if row is None:
                raise NotFoundError(f"no video source with {column} '{value}'")
            return _source_from_row(row)

    def get_video_source(self, entry_id: str) -> VideoSource:
        """Fetch a video source by ID."""
        return self._fetch_source("id", entry_id)

    def get_video_source_by_name(self, name: str) -> VideoSource:
        """Fetch a video source by name."""
        return self._fetch_source("name", name)

    def list_video_sources(self) -> list[VideoSource]:
        """Return every video source."""
        with self._operation() as session:
            rows = session.execute(f"SELECT {_SOURCE_COLUMNS} FROM video_sources").fetchall()
            return [_source_from_row(row) for row in rows]

    def _update_source(self, entry_id: str, changes: dict) -> None:
        with self._operation() as session:
            if not changes:
                return
            assignments = ", ".join(f"{column} = ?" for column in changes)
            session.execute(
                f"UPDATE video_sources SET {assignments} WHERE id = ?",
                (*changes.values(), entry_id),
            )

    def update_video_source(self, new_setting: VideoSource) -> None:
        """Update the name, description and playlist URI; unset fields stay as they are."""
        changes: dict = {}
        if new_setting.name:
            changes["name"] = new_setting.name
        if new_setting.description is not None:
            changes["description"] = new_setting.description
        if new_setting.playlist_uri is not None:
            changes["playlist_uri"] = new_setting.playlist_uri
        self._update_source(new_setting.id, changes)

    def change_video_source_stream_state(self, entry_id: str, streaming: int) -> None:
        """Set the streaming state of a video source; zero leaves it unchanged."""
        changes = {"streaming": streaming} if streaming else {}
        self._update_source(entry_id, changes)

    def update_video_source_stats(
        self, entry_id: str, req_resp_target_id: str, source_local_time: datetime
    ) -> None:
        """Record the request-response target and local time reported by a source."""
        changes: dict = {"req_resp_target_id": req_resp_target_id}
        if source_local_time != ZERO_TIME:
            changes["source_local_time"] = _to_db_time(source_local_time)
        self._update_source(entry_id, changes)

    def delete_video_source(self, entry_id: str) -> None:
        """Delete a video source and its live stream segments."""
        with self._operation() as session:
            session.execute("DELETE FROM live_video_segments WHERE source_id = ?", (entry_id,))
            session.execute("DELETE FROM video_sources WHERE id = ?", (entry_id,))

    # ------------------------------------------------------------------
    # Live stream segments

    def register_live_stream_segment(self, source_id: str, segment: Segment) -> str:
        """Record a new segment of a video source; return its ID."""
        with self._operation() as session:
            entry = VideoSegment(id=new_ulid(), source_id=source_id, segment=segment)
            _validate_segment(entry)
            session.execute(
                f"INSERT INTO live_video_segments ({_SEGMENT_COLUMNS}) "
                f"VALUES ({_placeholders(8)})",
                _segment_values(entry),
            )
            return entry.id

    def bulk_register_live_stream_segments(
        self, source_id: str, segments: Iterable[Segment]
    ) -> dict[str, str]:
        """Record several segments at once; return their IDs keyed by segment name."""
        with self._operation() as session:
            entries = [
                VideoSegment(id=new_ulid(), source_id=source_id, segment=segment)
                for segment in segments
            ]
            for entry in entries:
                _validate_segment(entry)
            session.executemany(
                f"INSERT INTO live_video_segments ({_SEGMENT_COLUMNS}) "
                f"VALUES ({_placeholders(8)})",
                [_segment_values(entry) for entry in entries],
            )
            return {entry.segment.name: entry.id for entry in entries}

    def _query_segments(self, where: str, params: tuple, suffix: str = "") -> list[VideoSegment]:
        with self._operation() as session:
            rows = session.execute(
                f"SELECT {_SEGMENT_COLUMNS} FROM live_video_segments WHERE {where} {suffix}",
                params,
            ).fetchall()
            return [_segment_from_row(row) for row in rows]

    def list_all_live_stream_segments(self, source_id: str) -> list[VideoSegment]:
        """Return all segments of a source, oldest end time first."""
        return self._query_segments("source_id = ?", (source_id,), "ORDER BY end_ts")

    def _first_segment(self, column: str, value: str) -> VideoSegment:
        found = self._query_segments(f"{column} = ?", (value,), "ORDER BY id LIMIT 1")
        if not found:
            err = NotFoundError(f"no live stream segment with {column} '{value}'")
            self._error = err
            raise err
        return found[0]

    def get_live_stream_segment(self, segment_id: str) -> VideoSegment:
        """Fetch a live stream segment by ID."""
        return self._first_segment("id", segment_id)

    def get_live_stream_segment_by_name(self, name: str) -> VideoSegment:
        """Fetch a live stream segment by name."""
        return self._first_segment("name", name)

    def list_all_live_stream_segments_after_time(
        self, source_id: str, timestamp: datetime
    ) -> list[VideoSegment]:
        """Return the source's segments ending at or after a time, oldest first."""
        return self._query_segments(
            "source_id = ? AND end_ts >= ?",
            (source_id, _to_db_time(timestamp)),
            "ORDER BY end_ts",
        )

    def get_latest_live_stream_segments(self, source_id: str, count: int) -> list[VideoSegment]:
        """Return the newest segments of a source, oldest of them first."""
        newest_first = self._query_segments(
            "source_id = ?", (source_id, count), "ORDER BY end_ts DESC LIMIT ?"
        )
        return list(reversed(newest_first))

    def mark_live_stream_segments_uploaded(self, ids: Iterable[str]) -> None:
        """Flag segments as uploaded."""
        ids = list(ids)
        with self._operation() as session:
            if ids:
                session.execute(
                    f"UPDATE live_video_segments SET uploaded = 1 "
                    f"WHERE id IN ({_placeholders(len(ids))})",
                    ids,
                )

    def delete_live_stream_segment(self, segment_id: str) -> None:
        """Delete one segment."""
        with self._operation() as session:
            session.execute("DELETE FROM live_video_segments WHERE id = ?", (segment_id,))

    def bulk_delete_live_stream_segment(self, ids: Iterable[str]) -> None:
        """Delete a group of segments."""
        ids = list(ids)
        with self._operation() as session:
            if ids:
                session.execute(
                    f"DELETE FROM live_video_segments WHERE id IN ({_placeholders(len(ids))})",
                    ids,
                )

    def delete_old_live_stream_segments(self, time_limit: datetime) -> None:
        """Delete every segment that ended before a time."""
        with self._operation() as session:
            session.execute(
                "DELETE FROM live_video_segments WHERE end_ts < ?", (_to_db_time(time_limit),)
            )