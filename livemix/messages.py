"""Messages exchanged between edge nodes and the system control node."""

from __future__ import annotations

import json
from dataclasses import dataclass, field, fields
from datetime import datetime
from typing import Any, ClassVar, Union

from livemix.models import Recording, VideoSource


def _dump_time(value: datetime) -> str:
    return value.isoformat()


def _load_time(value: str) -> datetime:
    return datetime.fromisoformat(value)


def _source_to_dict(source: VideoSource) -> dict[str, Any]:
    return {
        "id": source.id,
        "name": source.name,
        "target_segment_length": source.target_segment_length,
        "playlist_uri": source.playlist_uri,
        "description": source.description,
        "streaming": source.streaming,
        "req_resp_target_id": source.req_resp_target_id,
        "source_local_time": _dump_time(source.source_local_time),
    }


def _source_from_dict(data: dict[str, Any]) -> VideoSource:
    return VideoSource(
        id=data["id"],
        name=data["name"],
        target_segment_length=data["target_segment_length"],
        playlist_uri=data.get("playlist_uri"),
        description=data.get("description"),
        streaming=data["streaming"],
        req_resp_target_id=data.get("req_resp_target_id"),
        source_local_time=_load_time(data["source_local_time"]),
    )


def _recording_to_dict(recording: Recording) -> dict[str, Any]:
    return {
        "id": recording.id,
        "source_id": recording.source_id,
        "alias": recording.alias,
        "description": recording.description,
        "start_time": _dump_time(recording.start_time),
        "end_time": _dump_time(recording.end_time),
        "active": recording.active,
    }


def _recording_from_dict(data: dict[str, Any]) -> Recording:
    return Recording(
        id=data["id"],
        source_id=data["source_id"],
        alias=data.get("alias"),
        description=data.get("description"),
        start_time=_load_time(data["start_time"]),
        end_time=_load_time(data["end_time"]),
        active=data["active"],
    )


class _Message:
    TYPE: ClassVar[str]

    def _payload(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def _from_payload(cls, data: dict[str, Any]) -> "_Message":
        return cls(**{f.name: data[f.name] for f in fields(cls)})


@dataclass
class GeneralResponse(_Message):
    """Generic success or failure answer."""

    TYPE: ClassVar[str] = "general_response"
    success: bool
    error_msg: str = ""


@dataclass
class GetVideoSourceByNameRequest(_Message):
    """Ask control for a video source by name."""

    TYPE: ClassVar[str] = "get_video_source_by_name_request"
    target_name: str


@dataclass
class GetVideoSourceByNameResponse(_Message):
    """Control's answer with the requested video source."""

    TYPE: ClassVar[str] = "get_video_source_by_name_response"
    source: VideoSource

    def _payload(self) -> dict[str, Any]:
        return {"source": _source_to_dict(self.source)}

    @classmethod
    def _from_payload(cls, data: dict[str, Any]) -> "GetVideoSourceByNameResponse":
        return cls(source=_source_from_dict(data["source"]))


@dataclass
class ListActiveRecordingsRequest(_Message):
    """Ask control for the active recordings of a video source."""

    TYPE: ClassVar[str] = "list_active_recordings_request"
    source_id: str


@dataclass
class ListActiveRecordingsResponse(_Message):
    """Control's answer listing active recordings."""

    TYPE: ClassVar[str] = "list_active_recordings_response"
    recordings: list[Recording] = field(default_factory=list)

    def _payload(self) -> dict[str, Any]:
        return {"recordings": [_recording_to_dict(r) for r in self.recordings]}

    @classmethod
    def _from_payload(cls, data: dict[str, Any]) -> "ListActiveRecordingsResponse":
        return cls(recordings=[_recording_from_dict(r) for r in data["recordings"]])


@dataclass
class CloseAllActiveRecordingRequest(_Message):
    """Ask control to stop every active recording of a video source."""

    TYPE: ClassVar[str] = "close_all_active_recording_request"
    source_id: str


@dataclass
class ChangeSourceStreamingStateRequest(_Message):
    """Tell an edge node to change a video source's streaming state."""

    TYPE: ClassVar[str] = "change_source_streaming_state_request"
    source_id: str
    new_state: int


@dataclass
class StartVideoRecordingRequest(_Message):
    """Tell an edge node to start a recording session."""

    TYPE: ClassVar[str] = "start_video_recording_request"
    session: Recording

    def _payload(self) -> dict[str, Any]:
        return {"session": _recording_to_dict(self.session)}

    @classmethod
    def _from_payload(cls, data: dict[str, Any]) -> "StartVideoRecordingRequest":
        return cls(session=_recording_from_dict(data["session"]))


@dataclass
class StopVideoRecordingRequest(_Message):
    """Tell an edge node to stop a recording session."""

    TYPE: ClassVar[str] = "stop_video_recording_request"
    recording_id: str
    end_time: datetime

    def _payload(self) -> dict[str, Any]:
        return {"recording_id": self.recording_id, "end_time": _dump_time(self.end_time)}

    @classmethod
    def _from_payload(cls, data: dict[str, Any]) -> "StopVideoRecordingRequest":
        return cls(recording_id=data["recording_id"], end_time=_load_time(data["end_time"]))


@dataclass
class VideoSourceStatusReport(_Message):
    """Periodic status broadcast of a video source."""

    TYPE: ClassVar[str] = "video_source_status_report"
    source_id: str
    request_response_target_id: str
    local_time: datetime

    def _payload(self) -> dict[str, Any]:
        return {
            "source_id": self.source_id,
            "request_response_target_id": self.request_response_target_id,
            "local_time": _dump_time(self.local_time),
        }

    @classmethod
    def _from_payload(cls, data: dict[str, Any]) -> "VideoSourceStatusReport":
        return cls(
            source_id=data["source_id"],
            request_response_target_id=data["request_response_target_id"],
            local_time=_load_time(data["local_time"]),
        )


_MESSAGE_TYPES: dict[str, type[_Message]] = {
    cls.TYPE: cls
    for cls in (
        GeneralResponse,
        GetVideoSourceByNameRequest,
        GetVideoSourceByNameResponse,
        ListActiveRecordingsRequest,
        ListActiveRecordingsResponse,
        CloseAllActiveRecordingRequest,
        ChangeSourceStreamingStateRequest,
        StartVideoRecordingRequest,
        StopVideoRecordingRequest,
        VideoSourceStatusReport,
    )
}


def encode_message(message: _Message) -> bytes:
    """Serialise a message to JSON bytes tagged with its type."""
    if _MESSAGE_TYPES.get(getattr(type(message), "TYPE", None)) is not type(message):
        raise TypeError(f"unsupported message type '{type(message).__name__}'")
    return json.dumps({"type": message.TYPE, **message._payload()}).encode("utf-8")


def parse_message(raw: Union[bytes, str]) -> _Message:
    """Parse JSON bytes into the message they describe."""
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError("message is not a JSON object")
    type_name = data.get("type")
    cls = _MESSAGE_TYPES.get(type_name) if isinstance(type_name, str) else None
    if cls is None:
        raise ValueError(f"unknown message type '{type_name}'")
    try:
        return cls._from_payload(data)
    except (KeyError, TypeError, AttributeError) as err:
        raise ValueError(f"malformed '{type_name}' message: {err}") from err