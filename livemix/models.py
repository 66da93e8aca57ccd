"""Records for video sources, segments and recordings, and the SQL schema that holds them."""

from __future__ import annotations

import os
import sqlite3
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

ZERO_TIME = datetime.min.replace(tzinfo=timezone.utc)

_CROCKFORD = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
_RANDOM_BITS = 80
_RANDOM_MAX = (1 << _RANDOM_BITS) - 1

_ulid_lock = threading.Lock()
_ulid_last_ms = -1
_ulid_last_random = 0


@dataclass
class Segment:
    """One HLS media segment as described by a playlist."""

    name: str = ""
    start_time: datetime = ZERO_TIME
    end_time: datetime = ZERO_TIME
    length: float = 0.0
    uri: str = ""

    def __str__(self) -> str:
        return (
            f"{self.name} [{self.start_time.isoformat()} - {self.end_time.isoformat()}] "
            f"({self.length}s) @ {self.uri}"
        )


@dataclass
class VideoSource:
    """A single HLS video source."""

    id: str = ""
    name: str = ""
    target_segment_length: int = 0
    playlist_uri: Optional[str] = None
    description: Optional[str] = None
    streaming: int = 0
    req_resp_target_id: Optional[str] = None
    source_local_time: datetime = ZERO_TIME


@dataclass
class VideoSegment:
    """A stored video segment belonging to a video source."""

    id: str = ""
    source_id: str = ""
    segment: Segment = field(default_factory=Segment)
    uploaded: Optional[int] = None

    @property
    def name(self) -> str:
        return self.segment.name

    @property
    def start_time(self) -> datetime:
        return self.segment.start_time

    @property
    def end_time(self) -> datetime:
        return self.segment.end_time

    @property
    def length(self) -> float:
        return self.segment.length

    @property
    def uri(self) -> str:
        return self.segment.uri


@dataclass
class VideoSegmentWithData(VideoSegment):
    """A video segment together with its content."""

    content: bytes = b""


@dataclass
class Recording:
    """A video recording session of one video source."""

    id: str = ""
    source_id: str = ""
    alias: Optional[str] = None
    description: Optional[str] = None
    start_time: datetime = ZERO_TIME
    end_time: datetime = ZERO_TIME
    active: int = 0


def new_ulid() -> str:
    """Return a new ULID; IDs made within one process sort in creation order."""
    global _ulid_last_ms, _ulid_last_random
    with _ulid_lock:
        now_ms = time.time_ns() // 1_000_000
        if now_ms <= _ulid_last_ms:
            now_ms = _ulid_last_ms
            random_part = _ulid_last_random + 1
            if random_part > _RANDOM_MAX:
                now_ms += 1
                random_part = int.from_bytes(os.urandom(10), "big")
        else:
            random_part = int.from_bytes(os.urandom(10), "big")
        _ulid_last_ms = now_ms
        _ulid_last_random = random_part
    value = ((now_ms & ((1 << 48) - 1)) << _RANDOM_BITS) | random_part
    return "".join(_CROCKFORD[(value >> shift) & 31] for shift in range(125, -1, -5))


_SCHEMA = """
CREATE TABLE IF NOT EXISTS video_sources (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL UNIQUE,
    target_segment_length INTEGER NOT NULL,
    playlist_uri TEXT,
    description TEXT,
    streaming INTEGER NOT NULL DEFAULT -1,
    req_resp_target_id TEXT,
    source_local_time TEXT
);

CREATE TABLE IF NOT EXISTS live_video_segments (
    id TEXT PRIMARY KEY,
    source_id TEXT NOT NULL REFERENCES video_sources(id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    start_ts TEXT NOT NULL,
    end_ts TEXT NOT NULL,
    length REAL NOT NULL DEFAULT 0,
    uri TEXT NOT NULL DEFAULT '',
    uploaded INTEGER
);
CREATE INDEX IF NOT EXISTS idx_live_video_segments_source ON live_video_segments(source_id);
CREATE INDEX IF NOT EXISTS idx_live_video_segments_end_ts ON live_video_segments(end_ts);
CREATE INDEX IF NOT EXISTS idx_live_video_segments_name ON live_video_segments(name);

CREATE TABLE IF NOT EXISTS recording_sessions (
    id TEXT PRIMARY KEY,
    alias TEXT,
    description TEXT,
    source_id TEXT NOT NULL,
    start_ts TEXT NOT NULL,
    end_ts TEXT,
    active INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_recording_sessions_source ON recording_sessions(source_id);

CREATE TABLE IF NOT EXISTS recorded_segments (
    id TEXT PRIMARY KEY,
    source_id TEXT NOT NULL,
    name TEXT NOT NULL,
    start_ts TEXT NOT NULL,
    end_ts TEXT NOT NULL,
    length REAL NOT NULL DEFAULT 0,
    uri TEXT NOT NULL DEFAULT '',
    uploaded INTEGER
);
CREATE INDEX IF NOT EXISTS idx_recorded_segments_end_ts ON recorded_segments(end_ts);
CREATE INDEX IF NOT EXISTS idx_recorded_segments_name ON recorded_segments(name);

CREATE TABLE IF NOT EXISTS segment_to_recording_association (
    segment_id TEXT NOT NULL REFERENCES recorded_segments(id) ON DELETE CASCADE,
    recording_id TEXT NOT NULL REFERENCES recording_sessions(id) ON DELETE CASCADE,
    created_at TEXT NOT NULL,
    PRIMARY KEY (segment_id, recording_id)
);
"""


def create_schema(conn: sqlite3.Connection) -> None:
    """Create every table the store needs, leaving existing tables alone."""
    conn.executescript(_SCHEMA)


def _to_db_time(value: datetime) -> str:
    """Render a timestamp as sortable UTC text; naive values are taken as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    elif value.utcoffset() != timedelta(0):
        value = value.astimezone(timezone.utc)
    else:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat(timespec="microseconds")


def _from_db_time(value: Optional[str]) -> datetime:
    """Parse a stored timestamp; a missing value reads as the zero time."""
    if value is None:
        return ZERO_TIME
    return datetime.fromisoformat(value)