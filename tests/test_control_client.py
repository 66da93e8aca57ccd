import uuid
from datetime import datetime, timezone

import pytest

from livemix.control_client import (
    ControlRequestClient,
    ControlRequestError,
    ReqRespMessage,
    RequestTimeoutError,
)
from livemix.messages import (
    ChangeSourceStreamingStateRequest,
    CloseAllActiveRecordingRequest,
    GeneralResponse,
    GetVideoSourceByNameRequest,
    GetVideoSourceByNameResponse,
    ListActiveRecordingsRequest,
    ListActiveRecordingsResponse,
    StartVideoRecordingRequest,
    StopVideoRecordingRequest,
    encode_message,
    parse_message,
)
from livemix.models import Recording, VideoSource, new_ulid

EDGE_NAME = "unit-tester"
CONTROL_NAME = "ut-controller"


class FakeRRClient:
    def __init__(self):
        self.inbound = None
        self.requests = []
        self.responses = []
        self.on_request = None

    def set_inbound_request_handler(self, handler):
        self.inbound = handler

    def request(self, target_id, payload, metadata, call_param):
        self.requests.append((target_id, payload, metadata))
        if self.on_request is not None:
            self.on_request(payload, call_param)
        return str(uuid.uuid4())

    def respond(self, original, payload, metadata, multi_part):
        self.responses.append((original, parse_message(payload), multi_part))


class FakeOperator:
    def __init__(self):
        self.calls = []
        self.error = None

    def _record(self, *call):
        self.calls.append(call)
        if self.error is not None:
            raise self.error

    def change_video_source_stream_state(self, entry_id, streaming):
        self._record("stream", entry_id, streaming)

    def start_recording(self, new_recording):
        self._record("start", new_recording)

    def stop_recording(self, recording_id, end_time):
        self._record("stop", recording_id, end_time)


def _client(timeout=1.0):
    rr = FakeRRClient()
    uut = ControlRequestClient(EDGE_NAME, CONTROL_NAME, rr, timeout)
    return rr, uut


def _reply_with(expected_type, response, seen):
    def on_request(payload, call_param):
        request = parse_message(payload)
        assert isinstance(request, expected_type)
        seen.append(request)
        call_param.resp_handler(ReqRespMessage(payload=encode_message(response)))

    return on_request


def test_constructor_installs_inbound_handler():
    rr, uut = _client()
    assert rr.inbound == uut.process_inbound_request


def test_get_video_source_info():
    rr, uut = _client()
    source = VideoSource(
        id=str(uuid.uuid4()),
        name=str(uuid.uuid4()),
        target_segment_length=4,
        playlist_uri=None,
        streaming=-1,
    )
    seen = []
    rr.on_request = _reply_with(
        GetVideoSourceByNameRequest, GetVideoSourceByNameResponse(source), seen
    )
    received = uut.get_video_source_info("video-00")
    assert received == source
    assert seen[0].target_name == "video-00"
    assert rr.requests[0][0] == CONTROL_NAME


def test_get_video_source_info_error_response():
    rr, uut = _client()
    seen = []
    rr.on_request = _reply_with(
        GetVideoSourceByNameRequest, GeneralResponse(False, "dummy error"), seen
    )
    with pytest.raises(ControlRequestError, match="dummy error"):
        uut.get_video_source_info("video-00")
    assert seen[0].target_name == "video-00"


def test_get_video_source_info_timeout():
    rr, uut = _client()

    def on_request(payload, call_param):
        assert parse_message(payload).target_name == "video-00"
        call_param.timeout_handler()

    rr.on_request = on_request
    with pytest.raises(RequestTimeoutError):
        uut.get_video_source_info("video-00")


def test_no_answer_times_out():
    rr, uut = _client(timeout=0.05)
    with pytest.raises(RequestTimeoutError):
        uut.get_video_source_info("video-00")


def test_unexpected_response_type():
    rr, uut = _client()
    seen = []
    rr.on_request = _reply_with(
        GetVideoSourceByNameRequest, ListActiveRecordingsResponse([]), seen
    )
    with pytest.raises(ControlRequestError, match="unknown supported response type"):
        uut.get_video_source_info("video-00")


def _inbound(payload_message):
    return ReqRespMessage(
        sender_id=CONTROL_NAME,
        request_id=str(uuid.uuid4()),
        payload=encode_message(payload_message),
    )


def test_change_streaming_state():
    rr, uut = _client()
    operator = FakeOperator()

    with pytest.raises(ControlRequestError):
        rr.inbound(_inbound(ChangeSourceStreamingStateRequest(str(uuid.uuid4()), 0)))
    assert rr.responses == []

    uut.install_reference_to_manager(operator)
    source_id = str(uuid.uuid4())
    request = _inbound(ChangeSourceStreamingStateRequest(source_id, 1))

    rr.inbound(request)
    assert operator.calls == [("stream", source_id, 1)]
    original, response, multi_part = rr.responses[-1]
    assert original == request
    assert response == GeneralResponse(True, "")
    assert multi_part is False

    operator.error = RuntimeError("dummy error")
    rr.inbound(request)
    original, response, _ = rr.responses[-1]
    assert original == request
    assert response.success is False
    assert response.error_msg == "dummy error"


def test_start_recording():
    rr, uut = _client()
    operator = FakeOperator()

    with pytest.raises(ControlRequestError):
        rr.inbound(_inbound(StartVideoRecordingRequest(Recording())))

    uut.install_reference_to_manager(operator)
    session = Recording(id=str(uuid.uuid4()), source_id=str(uuid.uuid4()))
    request = _inbound(StartVideoRecordingRequest(session))

    rr.inbound(request)
    assert operator.calls == [("start", session)]
    original, response, _ = rr.responses[-1]
    assert original == request
    assert response.success is True

    operator.error = RuntimeError("dummy error")
    rr.inbound(request)
    _, response, _ = rr.responses[-1]
    assert response.success is False
    assert response.error_msg == "dummy error"


def test_stop_recording():
    rr, uut = _client()
    operator = FakeOperator()

    with pytest.raises(ControlRequestError):
        rr.inbound(
            _inbound(StopVideoRecordingRequest(str(uuid.uuid4()), datetime.now(timezone.utc)))
        )

    uut.install_reference_to_manager(operator)
    recording_id = str(uuid.uuid4())
    end_time = datetime.now(timezone.utc)
    request = _inbound(StopVideoRecordingRequest(recording_id, end_time))

    rr.inbound(request)
    assert operator.calls == [("stop", recording_id, end_time)]
    original, response, _ = rr.responses[-1]
    assert original == request
    assert response.success is True

    operator.error = RuntimeError("dummy error")
    rr.inbound(request)
    _, response, _ = rr.responses[-1]
    assert response.success is False
    assert response.error_msg == "dummy error"


def test_inbound_unhandled_request_type():
    rr, uut = _client()
    uut.install_reference_to_manager(FakeOperator())
    with pytest.raises(ControlRequestError):
        rr.inbound(_inbound(GeneralResponse(True, "")))


def test_stop_all_recordings():
    rr, uut = _client()
    source_id = str(uuid.uuid4())
    seen = []
    rr.on_request = _reply_with(CloseAllActiveRecordingRequest, GeneralResponse(True, ""), seen)
    assert uut.stop_all_associated_recordings(source_id) is None
    assert seen[0].source_id == source_id

    source_id = str(uuid.uuid4())
    seen.clear()
    rr.on_request = _reply_with(
        CloseAllActiveRecordingRequest, GeneralResponse(False, "dummy response"), seen
    )
    with pytest.raises(ControlRequestError) as info:
        uut.stop_all_associated_recordings(source_id)
    assert str(info.value) == "dummy response"
    assert seen[0].source_id == source_id


def test_list_active_recordings_of_source():
    rr, uut = _client()
    source_id = str(uuid.uuid4())
    recordings = [
        Recording(id=new_ulid(), source_id=source_id, active=1) for _ in range(3)
    ]
    seen = []
    rr.on_request = _reply_with(
        ListActiveRecordingsRequest, ListActiveRecordingsResponse(recordings), seen
    )
    received = uut.list_active_recordings_of_source(source_id)
    assert seen[0].source_id == source_id
    assert [r.id for r in received] == [r.id for r in recordings]
    assert all(r.source_id == source_id for r in received)

    source_id = str(uuid.uuid4())
    rr.on_request = _reply_with(
        ListActiveRecordingsRequest, GeneralResponse(False, "dummy error"), seen
    )
    with pytest.raises(ControlRequestError, match="dummy error"):
        uut.list_active_recordings_of_source(source_id)