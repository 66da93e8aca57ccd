"""Request-response client through which an edge node talks to the system control node."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Optional, Protocol, Union

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
from livemix.models import Recording, VideoSource

logger = logging.getLogger(__name__)


class ControlRequestError(Exception):
    """A request to or from the control node failed."""


class RequestTimeoutError(ControlRequestError):
    """The control node did not answer in time."""


@dataclass(frozen=True)
class ReqRespMessage:
    """One message carried over the request-response network."""

    sender_id: str = ""
    request_id: str = ""
    payload: bytes = b""


@dataclass
class RequestCallParam:
    """How an outbound request is made and where its answers go."""

    resp_handler: Callable[[ReqRespMessage], None]
    timeout_handler: Callable[[], None]
    timeout: float
    expected_responses_count: int = 1
    blocking: bool = False


class RequestResponseClient(Protocol):
    """The transport a ControlRequestClient sends and receives through."""

    def set_inbound_request_handler(self, handler: Callable[[ReqRespMessage], None]) -> None: ...

    def request(
        self, target_id: str, payload: bytes, metadata: dict, call_param: RequestCallParam
    ) -> str: ...

    def respond(
        self, original: ReqRespMessage, payload: bytes, metadata: dict, multi_part: bool
    ) -> None: ...


def _as_seconds(value: Union[float, int, timedelta]) -> float:
    if isinstance(value, timedelta):
        return value.total_seconds()
    return float(value)


class ControlRequestClient:
    """Sends requests to the control node and serves the control node's requests."""

    def __init__(
        self,
        client_name: str,
        control_target_id: str,
        core_client: RequestResponseClient,
        request_timeout: Union[float, timedelta],
    ) -> None:
        self.name = client_name
        self._target = control_target_id
        self._core = core_client
        self._timeout = _as_seconds(request_timeout)
        self._manager: Optional[Any] = None
        self._handlers: dict[type, Callable[[Any], GeneralResponse]] = {
            ChangeSourceStreamingStateRequest: self._on_change_streaming_state,
            StartVideoRecordingRequest: self._on_start_recording,
            StopVideoRecordingRequest: self._on_stop_recording,
        }
        core_client.set_inbound_request_handler(self.process_inbound_request)

    def install_reference_to_manager(self, manager: Any) -> None:
        """Set the video source operator that serves inbound requests."""
        self._manager = manager

    # ------------------------------------------------------------------
    # Inbound requests

    def process_inbound_request(self, message: ReqRespMessage) -> None:
        """Handle one request from the control node and send back the answer."""
        try:
            request = parse_message(message.payload)
        except ValueError as err:
            raise ControlRequestError(f"unable to parse inbound request: {err}") from err
        handler = self._handlers.get(type(request))
        if handler is None:
            raise ControlRequestError(
                f"no handler for inbound request type '{type(request).__name__}'"
            )
        if self._manager is None:
            raise ControlRequestError("no reference to VideoSourceOperator set yet")
        response = handler(request)
        self._core.respond(message, encode_message(response), {}, False)

    @staticmethod
    def _answer(description: str, action: Callable[[], Any]) -> GeneralResponse:
        try:
            action()
        except Exception as err:
            logger.error("%s failed: %s", description, err)
            return GeneralResponse(False, str(err))
        return GeneralResponse(True, "")

    def _on_change_streaming_state(
        self, request: ChangeSourceStreamingStateRequest
    ) -> GeneralResponse:
        return self._answer(
            f"Change source '{request.source_id}' streaming state",
            lambda: self._manager.change_video_source_stream_state(
                request.source_id, request.new_state
            ),
        )

    def _on_start_recording(self, request: StartVideoRecordingRequest) -> GeneralResponse:
        return self._answer(
            f"Start new recording '{request.session.id}' locally",
            lambda: self._manager.start_recording(request.session),
        )

    def _on_stop_recording(self, request: StopVideoRecordingRequest) -> GeneralResponse:
        return self._answer(
            f"Stop recording '{request.recording_id}' locally",
            lambda: self._manager.stop_recording(request.recording_id, request.end_time),
        )

    # ------------------------------------------------------------------
    # Outbound requests

    def _make_request(self, description: str, message: Any) -> Any:
        payload = encode_message(message)
        done = threading.Event()
        outcome: dict[str, Any] = {}

        def on_response(response: ReqRespMessage) -> None:
            try:
                outcome.setdefault("response", parse_message(response.payload))
            except ValueError as err:
                outcome.setdefault(
                    "error", ControlRequestError(f"{description}: unparsable response: {err}")
                )
            finally:
                done.set()

        def on_timeout() -> None:
            outcome.setdefault("error", RequestTimeoutError(f"{description}: request timed out"))
            done.set()

        call_param = RequestCallParam(
            resp_handler=on_response,
            timeout_handler=on_timeout,
            timeout=self._timeout,
            expected_responses_count=1,
            blocking=False,
        )
        self._core.request(self._target, payload, {}, call_param)
        if not done.wait(self._timeout):
            raise RequestTimeoutError(f"{description}: request timed out")
        if "response" in outcome:
            return outcome["response"]
        raise outcome["error"]

    @staticmethod
    def _unexpected(description: str, answer: Any) -> ControlRequestError:
        err = ControlRequestError(f"unknown supported response type '{type(answer).__name__}'")
        logger.error("%s: %s", description, err)
        return err

    def get_video_source_info(self, source_name: str) -> VideoSource:
        """Ask the control node for a video source's information."""
        description = f"Fetch video source '{source_name}' info"
        answer = self._make_request(description, GetVideoSourceByNameRequest(source_name))
        if isinstance(answer, GetVideoSourceByNameResponse):
            if not answer.source.id or not answer.source.name:
                raise ControlRequestError("invalid 'GetVideoSourceByNameResponse' from control")
            return answer.source
        if isinstance(answer, GeneralResponse):
            raise ControlRequestError(answer.error_msg)
        raise self._unexpected(description, answer)

    def list_active_recordings_of_source(self, source_id: str) -> list[Recording]:
        """Ask the control node for the active recordings of a video source."""
        description = f"Get active recordings of video source '{source_id}'"
        answer = self._make_request(description, ListActiveRecordingsRequest(source_id))
        if isinstance(answer, GeneralResponse):
            raise ControlRequestError(answer.error_msg)
        if isinstance(answer, ListActiveRecordingsResponse):
            return answer.recordings
        raise self._unexpected(description, answer)

    def stop_all_associated_recordings(self, source_id: str) -> None:
        """Ask the control node to stop every recording of a video source."""
        description = f"Stop all video source '{source_id}' recording sessions"
        answer = self._make_request(description, CloseAllActiveRecordingRequest(source_id))
        if isinstance(answer, GeneralResponse):
            if not answer.success:
                raise ControlRequestError(answer.error_msg)
            return
        raise self._unexpected(description, answer)