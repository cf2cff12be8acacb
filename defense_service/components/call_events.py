"""
Normalizes voice-call events into one CallEvent shape.

Two sources deliver the same lifecycle:
- the browser Web SDK, forwarded over WebSocket as {"type": <event name>, "payload": ...}
  with event names call-start, call-end, message, speech-start, speech-end, error;
- the provider's server messages posted to the webhook as {"message": {"type": ...}}
  (status-update, transcript, speech-update, tool-calls, end-of-call-report, hang).
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class CallEventType(str, Enum):
    CALL_START = "call-start"
    CALL_END = "call-end"
    TRANSCRIPT = "transcript"
    METADATA = "metadata"
    SPEECH_START = "speech-start"
    SPEECH_END = "speech-end"
    ERROR = "error"
    IGNORED = "ignored"


@dataclass(frozen=True)
class CallEvent:
    type: CallEventType
    role: Optional[str] = None
    content: Optional[str] = None
    payload: Any = None
    error: Optional[str] = None


IGNORED = CallEvent(CallEventType.IGNORED)


def _error_message(error: Any) -> str:
    """Message of an SDK error payload. Empty payloads yield an empty string."""
    if error is None:
        return ""
    if isinstance(error, str):
        return error
    if isinstance(error, dict):
        for key in ("message", "error", "errorMsg"):
            value = error.get(key)
            if isinstance(value, str) and value:
                return value
            if isinstance(value, dict):
                nested = _error_message(value)
                if nested:
                    return nested
        return ""
    return str(error)


def _from_message(message: Dict[str, Any]) -> CallEvent:
    """Shared handling of transcript / structured payloads, SDK and server alike."""
    msg_type = message.get("type")

    if msg_type == "transcript":
        if message.get("transcriptType", "final") != "final":
            return IGNORED
        return CallEvent(
            CallEventType.TRANSCRIPT,
            role=message.get("role"),
            content=message.get("transcript") or "",
        )

    if msg_type == "json":
        return CallEvent(CallEventType.METADATA, payload=message.get("json"))

    if msg_type == "tool-calls":
        for call in message.get("toolCallList") or message.get("toolCalls") or []:
            function = call.get("function") or {}
            if function.get("arguments") is not None:
                return CallEvent(CallEventType.METADATA, payload=function["arguments"])
        return IGNORED

    logger.debug(f"CallEvents: Ignoring message type {msg_type}")
    return IGNORED


def from_sdk_event(name: str, payload: Any = None) -> CallEvent:
    """Web SDK event name + payload -> CallEvent"""
    if name == "call-start":
        return CallEvent(CallEventType.CALL_START)
    if name == "call-end":
        return CallEvent(CallEventType.CALL_END)
    if name == "speech-start":
        return CallEvent(CallEventType.SPEECH_START)
    if name == "speech-end":
        return CallEvent(CallEventType.SPEECH_END)
    if name == "error":
        return CallEvent(CallEventType.ERROR, error=_error_message(payload))
    if name == "message":
        if not isinstance(payload, dict):
            logger.warning(f"CallEvents: SDK message without object payload: {payload!r}")
            return IGNORED
        return _from_message(payload)

    logger.debug(f"CallEvents: Unknown SDK event {name}")
    return IGNORED


def from_server_message(body: Dict[str, Any]) -> CallEvent:
    """Provider webhook body -> CallEvent"""
    message = body.get("message") if isinstance(body.get("message"), dict) else body
    msg_type = message.get("type")

    if msg_type == "status-update":
        status = message.get("status")
        if status == "in-progress":
            return CallEvent(CallEventType.CALL_START)
        if status == "ended":
            reason = str(message.get("endedReason") or "")
            if "error" in reason or "fault" in reason:
                return CallEvent(CallEventType.ERROR, error=reason)
            return CallEvent(CallEventType.CALL_END)
        return IGNORED

    if msg_type == "speech-update":
        status = message.get("status")
        if status == "started":
            return CallEvent(CallEventType.SPEECH_START, role=message.get("role"))
        if status == "stopped":
            return CallEvent(CallEventType.SPEECH_END, role=message.get("role"))
        return IGNORED

    if msg_type in ("end-of-call-report", "hang"):
        # The call end itself arrives as status-update "ended"
        logger.info(f"CallEvents: Received {msg_type}")
        return IGNORED

    return _from_message(message)


def extract_session_id(body: Dict[str, Any]) -> Optional[str]:
    """Finds the sessionId variable the call was started with in a webhook body."""
    message = body.get("message") if isinstance(body.get("message"), dict) else body
    call = message.get("call") or {}

    candidates = [
        (call.get("workflowOverrides") or {}).get("variableValues") or {},
        (call.get("assistantOverrides") or {}).get("variableValues") or {},
        call.get("metadata") or {},
    ]
    for values in candidates:
        session_id = values.get("sessionId")
        if session_id:
            return str(session_id)
    return None
