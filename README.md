# livemix

`livemix` keeps track of HLS live video sources, the MPEG-TS segments they
produce, and the recording sessions that capture those segments. It also holds
the edge-node side of the system: a request-response client for talking to the
control node and an operator that hands new segments to live-stream and
recording forwarders.

It needs nothing outside the Python standard library (3.10 or newer) and keeps
its data in SQLite.

## Modules

| Module | What it offers |
| --- | --- |
| `livemix.models` | `Segment`, `VideoSource`, `VideoSegment`, `VideoSegmentWithData`, `Recording`, `new_ulid()`, `create_schema(conn)` |
| `livemix.connection` | `SQLConnection`, `sqlite_uri()`, `in_memory_sqlite_uri()`, `postgres_dsn()`, `SqliteConfig`, `PostgresConfig`, `PostgresSSLConfig` |
| `livemix.messages` | the messages exchanged with the control node, `encode_message()` and `parse_message()` |
| `livemix.sources` | `LiveStreamStore` for video sources and live-stream segments, `StoreError`, `NotFoundError` |
| `livemix.recordings` | `PersistenceManager` (adds recording sessions and recorded segments), `new_persistence_manager()` |
| `livemix.tasks` | `TaskProcessor` worker pool and `IntervalTimer` |
| `livemix.control_client` | `ControlRequestClient`, `ReqRespMessage`, `RequestCallParam`, `ControlRequestError`, `RequestTimeoutError` |
| `livemix.source_operator` | `VideoSourceOperator` and its `VideoSourceOperatorConfig` |

## Connecting

`SQLConnection(uri, no_transactions)` opens a SQLite database and creates the
tables it needs. `sqlite_uri(db_file, busy_timeout_msec)` builds a URI for a
file database in WAL mode with foreign keys on; `in_memory_sqlite_uri(name)`
builds one for a named in-memory database. `apply_sqlite_pragmas(SqliteConfig(...))`
sets WAL journaling, normal sync and the busy timeout.

## Storing sources and segments

Each persistence manager wraps one transaction. Used as a context manager it
commits when the block finishes and rolls back if an error was recorded along
the way (or if the block raised). Once an operation has failed, later
operations on the same manager raise `StoreError` instead of running;
`mark_external_error()` forces a rollback for a failure outside SQL.

```python
from datetime import datetime, timedelta, timezone

from livemix.connection import SQLConnection, in_memory_sqlite_uri
from livemix.models import Segment
from livemix.recordings import new_persistence_manager

conn = SQLConnection(in_memory_sqlite_uri("demo"), False)

with new_persistence_manager(conn) as db:
    source_id = db.define_video_source("camera-1", 4, "file:///camera-1.m3u8", None)

start = datetime.now(timezone.utc)
with new_persistence_manager(conn) as db:
    segment_id = db.register_live_stream_segment(
        source_id,
        Segment(
            name="seg-0.ts",
            start_time=start,
            end_time=start + timedelta(seconds=4),
            length=4.0,
            uri="file:///seg-0.ts",
        ),
    )
    latest = db.get_latest_live_stream_segments(source_id, 1)
```

Looking up a record that does not exist raises `NotFoundError`. Live-stream
segments are listed in order of end time; `delete_old_live_stream_segments()`
removes those that ended before a given time.

## Recording sessions

```python
with new_persistence_manager(conn) as db:
    recording_id = db.define_recording_session(source_id, None, None, start)
    segments = db.list_all_live_stream_segments(source_id)
    db.register_recording_segments([recording_id], segments)

with new_persistence_manager(conn) as db:
    db.mark_end_of_recording_session(recording_id, datetime.now(timezone.utc))
    db.delete_recording_session(recording_id)
    removed = db.delete_unassociated_recording_segments()
```

`register_recording_segments()` raises `NotFoundError` if any of the recording
IDs is unknown. Segments already stored are kept as they are, so the same
segment can be linked to more sessions later.

## Messages

`encode_message()` turns any of the message classes (`GeneralResponse`,
`GetVideoSourceByNameRequest`, `ListActiveRecordingsRequest`,
`StartVideoRecordingRequest`, `VideoSourceStatusReport` and the rest) into JSON
bytes tagged with its type; `parse_message()` turns such bytes back into the
message and raises `ValueError` for anything it does not recognise.

## Edge node

`ControlRequestClient` works over a transport object you supply, which must
have `set_inbound_request_handler(handler)`,
`request(target_id, payload, metadata, call_param)` and
`respond(original, payload, metadata, multi_part)`. The client sends
`GetVideoSourceByNameRequest`, `ListActiveRecordingsRequest` and
`CloseAllActiveRecordingRequest` to the control node, and answers inbound
streaming-state, start-recording and stop-recording requests by calling the
operator installed with `install_reference_to_manager()`. A failed remote call
raises `ControlRequestError`; a request that gets no answer in time raises
`RequestTimeoutError`.

`VideoSourceOperator` sends a status report through the broadcaster when it is
created and then at every status-report interval, queues new segments for
background workers that hand them to the live-stream forwarder and, for every
active recording, to the recording forwarder. When given a control client it
also keeps the local list of active recordings in step with the control node
through `sync_active_recording_state()`. Call `stop()` to shut down its timers,
workers and forwarders.

## What is not included

- There is no command-line program and no HTTP API; everything is used from Python.
- `SQLConnection` opens SQLite only. `postgres_dsn()` builds a connection string
  but nothing in the package connects to Postgres.
- The package has no network transport, segment cache, broadcaster or segment
  forwarders of its own. `ControlRequestClient` and `VideoSourceOperator` take
  objects you provide with the methods described above.
- It does not read playlists or capture video; segments are registered by the caller.