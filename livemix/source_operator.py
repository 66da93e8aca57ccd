"""Edge node operator that manages one video source, its segments and its recordings."""

from __future__ import annotations

import dataclasses
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Optional, Protocol, Sequence, Union

from livemix.connection import SQLConnection
from livemix.messages import VideoSourceStatusReport
from livemix.models import Recording, VideoSegment, VideoSegmentWithData, VideoSource
from livemix.recordings import new_persistence_manager
from livemix.tasks import IntervalTimer, TaskProcessor

logger = logging.getLogger(__name__)


class VideoSegmentCache(Protocol):
    """Holds the contents of recent video segments."""

    def get_segments(self, segments: Sequence[VideoSegment]) -> Mapping[str, bytes]: ...

    def cache_entry_count(self) -> int: ...


class Broadcaster(Protocol):
    """Sends a message to every listener."""

    def broadcast(self, message: Any) -> None: ...


class RecordingSegmentForwarder(Protocol):
    """Forwards segments that belong to recording sessions."""

    def forward_segment(
        self, recording_ids: Sequence[str], segments: Sequence[VideoSegmentWithData]
    ) -> None: ...

    def stop(self) -> None: ...


class LiveStreamSegmentForwarder(Protocol):
    """Forwards segments of the live stream."""

    def forward_segment(self, segment: VideoSegmentWithData, blocking: bool) -> None: ...

    def stop(self) -> None: ...


@dataclass
class VideoSourceOperatorConfig:
    """Everything a video source operator works with."""

    self_source: VideoSource
    self_req_resp_target_id: str
    db_conns: SQLConnection
    video_cache: VideoSegmentCache
    broadcast_client: Broadcaster
    recording_segment_forwarder: RecordingSegmentForwarder
    live_stream_segment_forwarder: LiveStreamSegmentForwarder
    status_report_interval: Union[float, timedelta] = timedelta(minutes=1)


@dataclass(frozen=True)
class _StopRecordingRequest:
    recording_id: str
    end_time: datetime


def _utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class VideoSourceOperator:
    """Manages one video source on an edge node.

    Recording and segment requests are queued and handled on background
    workers; status reports and recording state syncs run periodically.
    """

    def __init__(self, config: VideoSourceOperatorConfig, rr_client: Optional[Any] = None) -> None:
        self.config = config
        self._rr_client = rr_client
        self._source_id = config.self_source.id
        self._stop_lock = threading.Lock()
        self._stopped = False

        self._record_sync_timer = IntervalTimer(f"recording-status-check-timer-{self._source_id}")
        self._report_timer = IntervalTimer(f"status-report-timer-{self._source_id}")

        self._send_source_status_report()

        self._worker = TaskProcessor("support-worker", 4)
        self._worker.register(Recording, self._handle_start_recording)
        self._worker.register(_StopRecordingRequest, self._handle_stop_recording)
        self._worker.register(VideoSegmentWithData, self._handle_new_segment_from_source)
        self._worker.start()

        self._report_timer.start(
            config.status_report_interval, self._send_source_status_report, False
        )
        if rr_client is not None:
            self._record_sync_timer.start(
                config.status_report_interval,
                lambda: self.sync_active_recording_state(datetime.now(timezone.utc)),
                False,
            )

    def _store(self):
        return new_persistence_manager(self.config.db_conns)

    def ready(self) -> None:
        """Check that the database answers queries."""
        with self._store() as store:
            store.ready()

    def stop(self) -> None:
        """Stop the timers, the workers and the forwarders."""
        with self._stop_lock:
            if self._stopped:
                return
            self._stopped = True
        self._report_timer.stop()
        self._record_sync_timer.stop()
        self._worker.stop()
        self.config.recording_segment_forwarder.stop()
        self.config.live_stream_segment_forwarder.stop()

    # ------------------------------------------------------------------
    # Video sources

    def record_known_video_source(
        self,
        entry_id: str,
        name: str,
        segment_len: int,
        playlist_uri: Optional[str],
        description: Optional[str],
        streaming: int,
    ) -> None:
        """Store this operator's video source; the entry is always kept under its own ID."""
        with self._store() as store:
            store.record_known_video_source(
                self._source_id, name, segment_len, playlist_uri, description, streaming
            )

    def change_video_source_stream_state(self, entry_id: str, streaming: int) -> None:
        """Change the streaming state of this operator's video source."""
        with self._store() as store:
            store.change_video_source_stream_state(self._source_id, streaming)

    def _send_source_status_report(self) -> None:
        timestamp = datetime.now(timezone.utc)
        report = VideoSourceStatusReport(
            self._source_id, self.config.self_req_resp_target_id, timestamp
        )
        try:
            self.config.broadcast_client.broadcast(report)
        except Exception as err:
            logger.error("Failed to send status report message: %s", err)
            raise
        with self._store() as store:
            store.update_video_source_stats(
                self._source_id, self.config.self_req_resp_target_id, timestamp
            )

    # ------------------------------------------------------------------
    # Recording sessions

    def start_recording(self, new_recording: Recording) -> None:
        """Queue a request to start a recording session."""
        logger.debug("Submit 'start new recording request' for '%s'", new_recording.id)
        self._worker.submit(new_recording)

    def _handle_start_recording(self, new_recording: Recording) -> None:
        new_recording = dataclasses.replace(
            new_recording, start_time=_utc(new_recording.start_time)
        )
        with self._store() as store:
            store.record_known_recording_session(new_recording)

            relevant = store.list_all_live_stream_segments_after_time(
                new_recording.source_id, new_recording.start_time
            )
            logger.info(
                "Found %d segments associated with known recording '%s'",
                len(relevant),
                new_recording.id,
            )
            if not relevant:
                return

            try:
                contents = self.config.video_cache.get_segments(relevant)
            except Exception as err:
                logger.error("Failed to fetch segment contents of '%s': %s", new_recording.id, err)
                store.mark_external_error(err)
                raise

            with_data = [
                VideoSegmentWithData(
                    id=segment.id,
                    source_id=segment.source_id,
                    segment=segment.segment,
                    uploaded=segment.uploaded,
                    content=contents[segment.id],
                )
                for segment in relevant
                if segment.id in contents
            ]
            if not with_data:
                return

            try:
                self.config.recording_segment_forwarder.forward_segment(
                    [new_recording.id], with_data
                )
            except Exception as err:
                logger.error("Failed to forward segments of '%s': %s", new_recording.id, err)
                store.mark_external_error(err)
                raise

    def stop_recording(self, recording_id: str, end_time: datetime) -> None:
        """Queue a request to stop a recording session."""
        logger.debug("Submit 'stop recording request' for '%s'", recording_id)
        self._worker.submit(_StopRecordingRequest(recording_id, end_time))

    def _handle_stop_recording(self, request: _StopRecordingRequest) -> None:
        with self._store() as store:
            store.mark_end_of_recording_session(request.recording_id, request.end_time)

    # ------------------------------------------------------------------
    # Video segments

    def new_segment_from_source(self, segment: VideoSegmentWithData) -> None:
        """Queue a new segment produced by the video source."""
        logger.debug("Submit new segment '%s' from source for processing", segment.name)
        self._worker.submit(segment)

    def _handle_new_segment_from_source(self, segment: VideoSegmentWithData) -> None:
        with self._store() as store:
            try:
                self.config.live_stream_segment_forwarder.forward_segment(segment, False)
            except Exception as err:
                logger.error(
                    "Unable to submit segment '%s' to live stream forwarder: %s",
                    segment.name,
                    err,
                )

            active = store.list_recording_sessions_of_source(self._source_id, True)
            if not active:
                return

            recording_ids = [recording.id for recording in active]
            try:
                self.config.recording_segment_forwarder.forward_segment(recording_ids, [segment])
            except Exception as err:
                logger.error(
                    "Unable to submit segment '%s' to recording forwarder: %s", segment.name, err
                )
                store.mark_external_error(err)
                raise

    # ------------------------------------------------------------------
    # Utilities

    def sync_active_recording_state(self, timestamp: datetime) -> None:
        """Bring local active recordings in line with those the control node reports."""
        if self._rr_client is None:
            raise RuntimeError("no control request client to sync recording state with")

        remote = self._rr_client.list_active_recordings_of_source(self._source_id)
        remote_ids = {recording.id for recording in remote}

        with self._store() as store:
            local = store.list_recording_sessions_of_source(self._source_id, True)
            local_ids = {recording.id for recording in local}
            for recording in local:
                if recording.id not in remote_ids:
                    store.mark_end_of_recording_session(recording.id, timestamp)

        for recording in remote:
            if recording.id not in local_ids:
                try:
                    self.start_recording(recording)
                except Exception as err:
                    logger.error("Failed to install ongoing recording '%s': %s", recording.id, err)

    def cache_entry_count(self) -> int:
        """Return the number of entries in the segment cache."""
        return self.config.video_cache.cache_entry_count()