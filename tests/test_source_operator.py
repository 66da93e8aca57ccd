import threading
import time
import uuid
from datetime import datetime, timedelta, timezone

import pytest

from livemix.connection import SQLConnection, sqlite_uri
from livemix.messages import encode_message
from livemix.models import Recording, Segment, VideoSegment, VideoSegmentWithData
from livemix.recordings import new_persistence_manager
from livemix.sources import NotFoundError
from livemix.source_operator import VideoSourceOperator, VideoSourceOperatorConfig


def _wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class FakeCache:
    def __init__(self, contents=None, count=0):
        self.contents = contents or {}
        self.count = count
        self.queries = []

    def get_segments(self, segments):
        self.queries.append([segment.id for segment in segments])
        return {k: v for k, v in self.contents.items() if k in {s.id for s in segments}}

    def cache_entry_count(self):
        return self.count


class FakeBroadcaster:
    def __init__(self, fail=False):
        self.fail = fail
        self.messages = []

    def broadcast(self, message):
        if self.fail:
            raise RuntimeError("broadcast failed")
        self.messages.append(message)


class FakeRecordingForwarder:
    def __init__(self):
        self.calls = []
        self.forwarded = threading.Event()
        self.stopped = False

    def forward_segment(self, recording_ids, segments):
        self.calls.append((list(recording_ids), list(segments)))
        self.forwarded.set()

    def stop(self):
        self.stopped = True


class FakeLiveForwarder:
    def __init__(self):
        self.calls = []
        self.forwarded = threading.Event()
        self.stopped = False

    def forward_segment(self, segment, blocking):
        self.calls.append((segment, blocking))
        self.forwarded.set()

    def stop(self):
        self.stopped = True


class FakeControlClient:
    def __init__(self):
        self.active = []

    def list_active_recordings_of_source(self, source_id):
        return list(self.active)


@pytest.fixture
def conn(tmp_path):
    connection = SQLConnection(sqlite_uri(str(tmp_path / "edge.db"), 5000))
    yield connection
    connection.close()


@pytest.fixture
def source(conn):
    with new_persistence_manager(conn) as store:
        source_id = store.define_video_source(f"src-{uuid.uuid4()}", 4, None, None)
        return store.get_video_source(source_id)


@pytest.fixture
def parts():
    return {
        "cache": FakeCache(),
        "broadcast": FakeBroadcaster(),
        "record": FakeRecordingForwarder(),
        "live": FakeLiveForwarder(),
        "rr": FakeControlClient(),
    }


@pytest.fixture
def config(conn, source, parts):
    return VideoSourceOperatorConfig(
        self_source=source,
        self_req_resp_target_id=str(uuid.uuid4()),
        db_conns=conn,
        video_cache=parts["cache"],
        broadcast_client=parts["broadcast"],
        recording_segment_forwarder=parts["record"],
        live_stream_segment_forwarder=parts["live"],
        status_report_interval=timedelta(minutes=5),
    )


@pytest.fixture
def operator(config, parts):
    uut = VideoSourceOperator(config, parts["rr"])
    yield uut
    uut.stop()


def _get_recording(conn, recording_id):
    with new_persistence_manager(conn) as store:
        try:
            return store.get_recording_session(recording_id)
        except NotFoundError:
            return None


def test_initial_status_report(operator, config, conn, parts):
    assert len(parts["broadcast"].messages) == 1
    encoded = encode_message(parts["broadcast"].messages[0])
    text = encoded.decode() if isinstance(encoded, bytes) else encoded
    assert config.self_source.id in text
    assert config.self_req_resp_target_id in text
    with new_persistence_manager(conn) as store:
        entry = store.get_video_source(config.self_source.id)
    assert entry.req_resp_target_id == config.self_req_resp_target_id


def test_broadcast_failure_stops_construction(config, parts):
    parts["broadcast"].fail = True
    with pytest.raises(RuntimeError, match="broadcast failed"):
        VideoSourceOperator(config, parts["rr"])


def test_ready(operator):
    assert operator.ready() is None
    assert operator.cache_entry_count() == 0


def test_cache_entry_count(config, parts):
    parts["cache"].count = 7
    uut = VideoSourceOperator(config, None)
    try:
        assert uut.cache_entry_count() == 7
    finally:
        uut.stop()


def test_start_recording_without_segments(operator, conn, source, parts):
    timestamp = datetime.now(timezone.utc)
    recording = Recording(id=str(uuid.uuid4()), source_id=source.id, start_time=timestamp, active=1)
    operator.start_recording(recording)
    assert _wait_for(lambda: _get_recording(conn, recording.id) is not None)
    stored = _get_recording(conn, recording.id)
    assert stored.source_id == source.id
    assert int(stored.start_time.timestamp()) == int(timestamp.timestamp())
    operator.stop()
    assert parts["record"].calls == []


def test_start_recording_with_existing_segments(operator, conn, source, parts):
    timestamp = datetime.now(timezone.utc)
    length = timedelta(seconds=4)
    segments = [
        Segment(
            name=f"seg-{idx}-{uuid.uuid4()}.ts",
            start_time=timestamp + length * idx,
            end_time=timestamp + length * (idx + 1),
            length=4.0,
            uri=f"file:///seg-{idx}.ts",
        )
        for idx in range(3)
    ]
    with new_persistence_manager(conn) as store:
        ids = store.bulk_register_live_stream_segments(source.id, segments)
    ordered_ids = [ids[segment.name] for segment in segments]
    contents = {seg_id: str(uuid.uuid4()).encode() for seg_id in ordered_ids}
    parts["cache"].contents = contents

    recording = Recording(id=str(uuid.uuid4()), source_id=source.id, start_time=timestamp, active=1)
    operator.start_recording(recording)
    assert parts["record"].forwarded.wait(5)

    assert parts["cache"].queries == [ordered_ids]
    recording_ids, forwarded = parts["record"].calls[0]
    assert recording_ids == [recording.id]
    assert [segment.id for segment in forwarded] == ordered_ids
    assert [segment.content for segment in forwarded] == [contents[i] for i in ordered_ids]
    assert _get_recording(conn, recording.id) is not None


def test_stop_recording(operator, conn, source):
    with new_persistence_manager(conn) as store:
        recording_id = store.define_recording_session(
            source.id, None, None, datetime.now(timezone.utc)
        )
    end_time = datetime.now(timezone.utc)
    operator.stop_recording(recording_id, end_time)
    assert _wait_for(lambda: _get_recording(conn, recording_id).active == -1)
    assert _get_recording(conn, recording_id).end_time == end_time


def _segment_with_data(source_id):
    now = datetime.now(timezone.utc)
    return VideoSegmentWithData(
        id=str(uuid.uuid4()),
        source_id=source_id,
        segment=Segment(name=str(uuid.uuid4()), start_time=now, end_time=now),
        content=str(uuid.uuid4()).encode(),
    )


def test_new_segment_without_recordings(operator, source, parts):
    segment = _segment_with_data(source.id)
    operator.new_segment_from_source(segment)
    assert parts["live"].forwarded.wait(5)
    operator.stop()
    assert parts["live"].calls == [(segment, False)]
    assert parts["record"].calls == []


def test_new_segment_with_active_recording(operator, conn, source, parts):
    with new_persistence_manager(conn) as store:
        recording_id = store.define_recording_session(
            source.id, None, None, datetime.now(timezone.utc)
        )
    segment = _segment_with_data(source.id)
    operator.new_segment_from_source(segment)
    assert parts["record"].forwarded.wait(5)
    assert parts["live"].calls == [(segment, False)]
    assert parts["record"].calls == [([recording_id], [segment])]


def test_stop_stops_forwarders(config, parts):
    parts["cache"].count = 3
    uut = VideoSourceOperator(config, None)
    uut.stop()
    assert parts["record"].stopped is True
    assert parts["live"].stopped is True
    assert uut.cache_entry_count() == 3


def test_sync_without_control_client(config):
    uut = VideoSourceOperator(config, None)
    try:
        with pytest.raises(RuntimeError):
            uut.sync_active_recording_state(datetime.now(timezone.utc))
    finally:
        uut.stop()


def _active_ids(conn, source_id):
    with new_persistence_manager(conn) as store:
        return {r.id for r in store.list_recording_sessions_of_source(source_id, True)}


def test_sync_nothing_anywhere(operator, conn, source):
    operator.sync_active_recording_state(datetime.now(timezone.utc))
    assert _active_ids(conn, source.id) == set()


def test_sync_remote_recording_installed(operator, conn, source, parts):
    remote = Recording(
        id=str(uuid.uuid4()), source_id=source.id,
        start_time=datetime.now(timezone.utc), active=1,
    )
    parts["rr"].active = [remote]
    operator.sync_active_recording_state(datetime.now(timezone.utc))
    assert _wait_for(lambda: _active_ids(conn, source.id) == {remote.id})
    with new_persistence_manager(conn) as store:
        stored = store.get_recording_session(remote.id)
        active = store.list_recording_sessions_of_source(source.id, True)
    assert stored.id == remote.id
    assert stored.source_id == source.id
    assert stored.active == 1
    assert [entry.id for entry in active] == [remote.id]


def test_sync_local_recording_ended(operator, conn, source, parts):
    with new_persistence_manager(conn) as store:
        local_id = store.define_recording_session(source.id, None, None, datetime.now(timezone.utc))
    timestamp = datetime.now(timezone.utc)
    operator.sync_active_recording_state(timestamp)
    stored = _get_recording(conn, local_id)
    assert stored.active == -1
    assert stored.end_time == timestamp


def test_sync_matching_recording_kept(operator, conn, source, parts):
    with new_persistence_manager(conn) as store:
        local_id = store.define_recording_session(source.id, None, None, datetime.now(timezone.utc))
        parts["rr"].active = [store.get_recording_session(local_id)]
    operator.sync_active_recording_state(datetime.now(timezone.utc))
    assert _active_ids(conn, source.id) == {local_id}


def test_sync_mismatch(operator, conn, source, parts):
    with new_persistence_manager(conn) as store:
        local_id = store.define_recording_session(source.id, None, None, datetime.now(timezone.utc))
    remote = Recording(
        id=str(uuid.uuid4()), source_id=source.id,
        start_time=datetime.now(timezone.utc), active=1,
    )
    parts["rr"].active = [remote]
    timestamp = datetime.now(timezone.utc)
    operator.sync_active_recording_state(timestamp)
    assert _wait_for(lambda: _active_ids(conn, source.id) == {remote.id})
    assert _get_recording(conn, local_id).end_time == timestamp


def test_record_known_video_source_uses_own_id(operator, conn, source):
    operator.record_known_video_source(str(uuid.uuid4()), "renamed", 6, None, None, 1)
    with new_persistence_manager(conn) as store:
        entry = store.get_video_source(source.id)
        count = len(store.list_video_sources())
    assert entry.name == "renamed"
    assert entry.target_segment_length == 6
    assert entry.streaming == 1
    assert count == 1


def test_change_stream_state(operator, conn, source):
    operator.change_video_source_stream_state(str(uuid.uuid4()), 1)
    with new_persistence_manager(conn) as store:
        assert store.get_video_source(source.id).streaming == 1


def test_video_segment_ids_unchanged_by_cache(operator):
    cache = FakeCache({"a": b"x"})
    found = cache.get_segments([VideoSegment(id="a"), VideoSegment(id="b")])
    assert found == {"a": b"x"}