"""
Phase controller for the two-stage defense call.

The controller state is the pair (CallStatus, SessionPhase). CallStatus moves
through TRANSITIONS; a trigger without an entry for the current status is
logged and ignored. SessionPhase only moves forward, from preparation to
examination, on a clean end of the preparation call.

Everything that belongs to one session (transcript, reconnect counter,
pending timers) lives in its SessionContext. UI effects are emitted as plain
dicts through the async `notify` callback.
"""

import asyncio
import json
import logging
import os
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..errors import CallStartError, ConfigurationError, InvalidTransitionError
from .call_events import CallEvent, CallEventType
from .question_generator import DEFAULT_ACADEMIC_LEVEL, get_fallback_questions

logger = logging.getLogger(__name__)

VAPI_WORKFLOW_ID = os.getenv("VAPI_WORKFLOW_ID", "")
PHASE_TRANSITION_DELAY_SEC = float(os.getenv("PHASE_TRANSITION_DELAY_SEC", "2"))
RECONNECT_DELAY_SEC = float(os.getenv("RECONNECT_DELAY_SEC", "5"))
CONNECTION_TIMEOUT_SEC = float(os.getenv("CONNECTION_TIMEOUT_SEC", "15"))
MAX_RECONNECT_ATTEMPTS = 3
FEEDBACK_ON_FIRST_EXAMINATION_END = os.getenv("FEEDBACK_ON_FIRST_EXAMINATION_END", "false").lower() in ("1", "true", "yes")

MIN_FEEDBACK_TURNS = 3
DEFAULT_PROJECT_TITLE = "Project Defense"
EMPTY_ERROR_MESSAGE = "Unknown connection error"

EXAMINATION_FALLBACK_QUESTIONS = [
    "Explain the overall architecture of your project.",
    "What were the main technical challenges you faced?",
    "How did you ensure the quality of your implementation?",
    "Describe your methodology approach in detail.",
    "What are the limitations of your current implementation?",
]

PREPARATION_STARTED_MESSAGE = (
    "Starting project preparation phase. The AI coach will gather information about your project "
    "to prepare for your defense examination."
)
EXAMINATION_STARTED_MESSAGE = (
    "Starting your project defense examination. The AI examiner will ask you questions about your "
    "project based on the information provided. Please answer verbally when prompted."
)
PHASE_TRANSITION_MESSAGE = (
    "Project preparation completed. Now starting the defense examination with the AI examiner."
)
MANUAL_RESTART_MESSAGE = (
    "Please click the 'Start Defense' button to begin the examination phase with the AI examiner."
)

# Lower-cased substrings
CONFIGURATION_ERROR_MARKERS = (
    "api key",
    "authentication",
    "unauthorized",
    "google_generative_ai_api_key",
    "openrouter_api_key",
    "workflow id is missing",
)
CONNECTIVITY_ERROR_MARKERS = (
    "connection",
    "ended",
    "transport",
    "network",
    "meeting has ended",
    "socket",
    "timeout",
    "timed out",
)


class CallStatus(str, Enum):
    INACTIVE = "inactive"
    CONNECTING = "connecting"
    ACTIVE = "active"
    FINISHED = "finished"
    ERROR = "error"


class SessionPhase(str, Enum):
    PREPARATION = "preparation"
    EXAMINATION = "examination"


class Trigger(str, Enum):
    START = "start"
    CALL_START = "call-start"
    CALL_END = "call-end"
    ERROR = "error"
    STOP = "stop"


class ErrorKind(str, Enum):
    CONFIGURATION = "configuration"
    CONNECTIVITY = "connectivity"
    UNKNOWN = "unknown"


TRANSITIONS = {
    (CallStatus.INACTIVE, Trigger.START): CallStatus.CONNECTING,
    (CallStatus.FINISHED, Trigger.START): CallStatus.CONNECTING,
    (CallStatus.ERROR, Trigger.START): CallStatus.CONNECTING,
    (CallStatus.CONNECTING, Trigger.CALL_START): CallStatus.ACTIVE,
    (CallStatus.ACTIVE, Trigger.CALL_END): CallStatus.FINISHED,
    (CallStatus.CONNECTING, Trigger.ERROR): CallStatus.ERROR,
    (CallStatus.ACTIVE, Trigger.ERROR): CallStatus.ERROR,
    (CallStatus.INACTIVE, Trigger.STOP): CallStatus.FINISHED,
    (CallStatus.CONNECTING, Trigger.STOP): CallStatus.FINISHED,
    (CallStatus.ACTIVE, Trigger.STOP): CallStatus.FINISHED,
    (CallStatus.FINISHED, Trigger.STOP): CallStatus.FINISHED,
    (CallStatus.ERROR, Trigger.STOP): CallStatus.FINISHED,
}


@dataclass(frozen=True)
class ControllerState:
    status: CallStatus = CallStatus.INACTIVE
    phase: SessionPhase = SessionPhase.PREPARATION


@dataclass
class SessionContext:
    session_id: str
    user_id: str
    user_name: str = ""
    project_title: str = DEFAULT_PROJECT_TITLE
    academic_level: str = ""
    technologies: List[str] = field(default_factory=list)
    questions: List[str] = field(default_factory=list)
    has_document_context: bool = False
    transcript: List[Dict[str, str]] = field(default_factory=list)
    reconnect_attempts: int = 0
    ready_for_feedback: bool = False
    feedback_in_progress: bool = False
    feedback_id: Optional[str] = None
    is_speaking: bool = False
    error_message: str = ""
    reconnect_task: Optional[asyncio.Task] = None
    watchdog_task: Optional[asyncio.Task] = None
    transition_task: Optional[asyncio.Task] = None
    metadata_lock: asyncio.Lock = field(default_factory=asyncio.Lock)


def classify_error(message: str) -> ErrorKind:
    text = (message or "").lower()
    if not text.strip():
        return ErrorKind.CONNECTIVITY
    if any(marker in text for marker in CONFIGURATION_ERROR_MARKERS):
        return ErrorKind.CONFIGURATION
    if text == EMPTY_ERROR_MESSAGE.lower() or any(marker in text for marker in CONNECTIVITY_ERROR_MARKERS):
        return ErrorKind.CONNECTIVITY
    return ErrorKind.UNKNOWN


def start_failure_message(message: str) -> str:
    """User-facing text for a call that could not be started"""
    text = message.lower()
    if "api key" in text or "authentication" in text:
        return f"API key error: {message}"
    if "timeout" in text or "timed out" in text:
        return "Connection timeout. The service is taking too long to respond."
    if "maximum reconnection attempts" in text:
        return "Could not establish a stable connection after multiple attempts."
    return f"Failed to start defense session: {message}"


def map_project_metadata(info: Dict[str, Any]) -> Dict[str, Any]:
    """
    Project info event -> session fields. Only present values are mapped:
    title -> role, academicLevel -> level and type, technologies (list) -> techstack,
    focusRatio -> focus_ratio.
    """
    update: Dict[str, Any] = {}

    title = info.get("title")
    if title:
        update["role"] = str(title)

    level = info.get("academicLevel") or info.get("academic_level")
    if level:
        update["level"] = str(level)
        update["type"] = f"{level} Defense"

    technologies = info.get("technologies")
    if isinstance(technologies, list):
        update["techstack"] = [str(t) for t in technologies]

    focus_ratio = info.get("focusRatio") or info.get("focus_ratio")
    if focus_ratio:
        update["focus_ratio"] = str(focus_ratio)

    return update


def format_questions(questions: List[str]) -> str:
    return "\n".join(f"- {q}" for q in questions)


async def _noop_notify(event: Dict[str, Any]) -> None:
    return None


class PhaseController:
    """Drives the preparation and examination calls of one defense session"""

    def __init__(
        self,
        context: SessionContext,
        transport,
        session_store,
        feedback_generator,
        notify: Optional[Callable[[Dict[str, Any]], Awaitable[None]]] = None,
        workflow_id: Optional[str] = None,
        phase_transition_delay: Optional[float] = None,
        reconnect_delay: Optional[float] = None,
        connection_timeout: Optional[float] = None,
        max_reconnect_attempts: int = MAX_RECONNECT_ATTEMPTS,
        feedback_on_first_end: Optional[bool] = None,
        initial_phase: SessionPhase = SessionPhase.PREPARATION,
    ):
        self.context = context
        self.transport = transport
        self.session_store = session_store
        self.feedback_generator = feedback_generator
        self.notify = notify or _noop_notify
        self.workflow_id = VAPI_WORKFLOW_ID if workflow_id is None else workflow_id
        self.phase_transition_delay = PHASE_TRANSITION_DELAY_SEC if phase_transition_delay is None else phase_transition_delay
        self.reconnect_delay = RECONNECT_DELAY_SEC if reconnect_delay is None else reconnect_delay
        self.connection_timeout = CONNECTION_TIMEOUT_SEC if connection_timeout is None else connection_timeout
        self.max_reconnect_attempts = max_reconnect_attempts
        self.feedback_on_first_end = (
            FEEDBACK_ON_FIRST_EXAMINATION_END if feedback_on_first_end is None else feedback_on_first_end
        )
        self.state = ControllerState(phase=initial_phase)

    # -- state -----------------------------------------------------------

    @property
    def status(self) -> CallStatus:
        return self.state.status

    @property
    def phase(self) -> SessionPhase:
        return self.state.phase

    def _log_prefix(self) -> str:
        return f"PhaseController[{self.context.session_id}]"

    def _apply(self, trigger: Trigger) -> bool:
        target = TRANSITIONS.get((self.state.status, trigger))
        if target is None:
            logger.info(f"{self._log_prefix()}: Ignoring {trigger.value} in status {self.state.status.value}")
            return False
        if target != self.state.status:
            logger.info(f"{self._log_prefix()}: {self.state.status.value} -> {target.value} ({trigger.value})")
        self.state = replace(self.state, status=target)
        return True

    def _force_status(self, status: CallStatus) -> None:
        """Used only where a failed start has to land in ERROR while CONNECTING."""
        self.state = replace(self.state, status=status)

    # -- UI effects ------------------------------------------------------

    async def _emit(self, event_type: str, **data) -> None:
        event = {"type": event_type, "session_id": self.context.session_id}
        event.update(data)
        try:
            await self.notify(event)
        except Exception as e:
            logger.warning(f"{self._log_prefix()}: Failed to deliver {event_type} event: {e}")

    async def _notice(self, level: str, message: str) -> None:
        await self._emit("notice", level=level, message=message)

    async def _navigate(self, target: str, final: bool = True) -> None:
        """`final` is False only when the session continues after the user is sent home."""
        if target == "feedback":
            path = f"/interview/{self.context.session_id}/feedback"
        else:
            path = "/"
        await self._emit("navigate", target=target, path=path, final=final)

    async def _emit_status(self) -> None:
        await self._emit(
            "status",
            status=self.state.status.value,
            phase=self.state.phase.value,
            error_message=self.context.error_message,
        )

    async def add_system_turn(self, content: str) -> None:
        await self._append_turn("system", content)

    async def _append_turn(self, role: str, content: str) -> None:
        turn = {"role": role, "content": content}
        self.context.transcript.append(turn)
        await self._emit("transcript", **turn)

    # -- timers ----------------------------------------------------------

    def _cancel(self, attr: str) -> None:
        task = getattr(self.context, attr)
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        setattr(self.context, attr, None)

    def _cancel_timers(self) -> None:
        self._cancel("reconnect_task")
        self._cancel("watchdog_task")
        self._cancel("transition_task")

    async def wait_for_pending(self) -> None:
        """Waits until no phase transition or reconnect remains scheduled."""
        while True:
            tasks = [
                t for t in (self.context.transition_task, self.context.reconnect_task)
                if t is not None and not t.done() and t is not asyncio.current_task()
            ]
            if not tasks:
                return
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _connection_watchdog(self) -> None:
        await asyncio.sleep(self.connection_timeout)
        if self.state.status == CallStatus.CONNECTING:
            logger.warning(
                f"{self._log_prefix()}: No call-start after {self.connection_timeout}s, synthesizing timeout"
            )
            self.context.watchdog_task = None
            await self.handle_error("Connection timeout")

    # -- start / stop ----------------------------------------------------

    async def _refresh_from_store(self) -> None:
        """Picks up metadata gathered during preparation before the examination call."""
        session = await self.session_store.get(self.context.session_id)
        if not session:
            logger.warning(f"{self._log_prefix()}: Session not found while preparing examination")
            return

        ctx = self.context
        if session.get("questions"):
            ctx.questions = list(session["questions"])
        role = session.get("role")
        if role and role != DEFAULT_PROJECT_TITLE:
            ctx.project_title = role
        if session.get("level"):
            ctx.academic_level = session["level"]
        if isinstance(session.get("techstack"), list):
            ctx.technologies = list(session["techstack"])

    def _project_context(self) -> str:
        ctx = self.context
        lines = [f"Project Title: {ctx.project_title}"]
        if ctx.academic_level:
            lines.append(f"Academic Level: {ctx.academic_level}")
        if ctx.technologies:
            lines.append(f"Technologies: {', '.join(ctx.technologies)}")
        return "\n".join(lines) + "\n"

    def build_variable_values(self, phase: SessionPhase) -> Dict[str, Any]:
        ctx = self.context
        is_examination = phase == SessionPhase.EXAMINATION
        questions = ctx.questions or EXAMINATION_FALLBACK_QUESTIONS
        return {
            "username": ctx.user_name,
            "userId": ctx.user_id,
            "sessionId": ctx.session_id,
            "phase": phase.value,
            "isExaminer": is_examination,
            "useExternalEvaluatorForExamination": is_examination,
            "projectContext": self._project_context() if is_examination else "",
            "projectTitle": ctx.project_title,
            "academicLevel": ctx.academic_level,
            "technologies": ", ".join(ctx.technologies),
            "questions": format_questions(questions),
            "hasDocumentContext": ctx.has_document_context,
        }

    async def start(self, phase: Optional[SessionPhase] = None, reconnect: bool = False) -> None:
        """
        Start a call for `phase` (default: the current phase).

        Allowed from INACTIVE, FINISHED and ERROR. Raises InvalidTransitionError
        otherwise, ConfigurationError for missing workflow id or credentials and
        CallStartError when the transport fails.
        """
        if (self.state.status, Trigger.START) not in TRANSITIONS:
            raise InvalidTransitionError(f"Cannot start a call while {self.state.status.value}")

        phase = phase or self.state.phase
        if phase != self.state.phase:
            self.state = replace(self.state, phase=phase)

        if not self.workflow_id:
            self.context.error_message = "VAPI configuration error: Workflow ID is missing"
            await self._notice("error", "Cannot start session: voice workflow is not configured")
            raise ConfigurationError("VAPI workflow ID is missing")

        # A manual start supersedes any scheduled reconnect
        self._cancel("reconnect_task")
        self._cancel("watchdog_task")

        self._apply(Trigger.START)
        self.context.error_message = ""
        await self._emit_status()

        if phase == SessionPhase.EXAMINATION and not reconnect:
            await self._refresh_from_store()
            await self.add_system_turn(f'Beginning defense examination for project: "{self.context.project_title}"')
            await self.add_system_turn(EXAMINATION_STARTED_MESSAGE)

        variable_values = self.build_variable_values(phase)

        try:
            call = await asyncio.wait_for(
                self.transport.start(self.workflow_id, variable_values),
                timeout=self.connection_timeout,
            )
        except ConfigurationError as e:
            self._force_status(CallStatus.ERROR)
            self.context.error_message = start_failure_message(str(e))
            await self._notice("error", "API key configuration error. Please contact support.")
            await self._emit_status()
            raise
        except Exception as e:
            message = str(e) or ("Connection timeout" if isinstance(e, asyncio.TimeoutError) else type(e).__name__)
            self._force_status(CallStatus.ERROR)
            self.context.error_message = start_failure_message(message)
            logger.error(f"{self._log_prefix()}: Failed to start {phase.value} call: {message}", exc_info=True)
            await self._notice("error", self.context.error_message)
            await self._emit_status()
            raise CallStartError(message, user_message=self.context.error_message) from e

        if self.state.status == CallStatus.CONNECTING:
            self.context.watchdog_task = asyncio.create_task(self._connection_watchdog())

        await self._emit("call_created", phase=phase.value, call=call if isinstance(call, dict) else None)
        logger.info(f"{self._log_prefix()}: {phase.value} call requested (reconnect={reconnect})")

    async def stop(self) -> None:
        """Force FINISHED, cancel timers and end the call. Never raises."""
        try:
            self._cancel_timers()
            self.context.reconnect_attempts = 0
            self.context.is_speaking = False
            self._apply(Trigger.STOP)
            await self._emit_status()
        except Exception as e:
            logger.warning(f"{self._log_prefix()}: Error while stopping: {e}")

        try:
            await self.transport.stop()
        except Exception as e:
            logger.warning(f"{self._log_prefix()}: Transport stop failed (call may already be closed): {e}")

    async def end_call(self) -> None:
        """User hang-up: stop the call and treat it as a clean end of the current phase."""
        was_active = self.state.status == CallStatus.ACTIVE
        await self.stop()
        if was_active:
            await self._on_call_finished()

    # -- event handlers --------------------------------------------------

    async def dispatch(self, event: CallEvent) -> None:
        if event.type == CallEventType.CALL_START:
            await self.handle_call_start()
        elif event.type == CallEventType.CALL_END:
            await self.handle_call_end()
        elif event.type == CallEventType.TRANSCRIPT:
            await self.handle_transcript(event.role, event.content)
        elif event.type == CallEventType.METADATA:
            await self.handle_metadata(event.payload)
        elif event.type == CallEventType.SPEECH_START:
            await self.handle_speech(True)
        elif event.type == CallEventType.SPEECH_END:
            await self.handle_speech(False)
        elif event.type == CallEventType.ERROR:
            await self.handle_error(event.error)

    async def handle_call_start(self) -> None:
        if not self._apply(Trigger.CALL_START):
            return
        self._cancel("watchdog_task")
        self.context.error_message = ""
        self.context.reconnect_attempts = 0
        await self._emit_status()

    async def handle_call_end(self) -> None:
        if not self._apply(Trigger.CALL_END):
            return
        self._cancel("watchdog_task")
        self.context.reconnect_attempts = 0
        self.context.is_speaking = False
        await self._emit_status()
        await self._on_call_finished()

    async def _on_call_finished(self) -> None:
        ctx = self.context

        if self.state.phase == SessionPhase.PREPARATION:
            self.state = replace(self.state, phase=SessionPhase.EXAMINATION)
            await self._notice("success", "Project preparation phase completed!")

            result = await self.session_store.update_partial(ctx.session_id, {"status": "Ready for examination"})
            if not result.success:
                logger.error(f"{self._log_prefix()}: Failed to update preparation status: {result.error}")

            await self.add_system_turn(PHASE_TRANSITION_MESSAGE)
            await self._emit_status()
            self._cancel("transition_task")
            ctx.transition_task = asyncio.create_task(self._start_examination_after_delay())
            return

        if ctx.ready_for_feedback or self.feedback_on_first_end:
            await self._generate_feedback()
            return

        ctx.ready_for_feedback = True
        await self._notice("info", "Defense examination session ended")
        await self._navigate("home", final=False)

    async def _start_examination_after_delay(self) -> None:
        await asyncio.sleep(self.phase_transition_delay)
        try:
            logger.info(f"{self._log_prefix()}: Automatically starting examination phase")
            await self.start(SessionPhase.EXAMINATION)
        except Exception as e:
            logger.error(f"{self._log_prefix()}: Failed to auto-start examination phase: {e}", exc_info=True)
            await self._notice("error", "Failed to start examination. Please try again manually.")
            await self.add_system_turn(MANUAL_RESTART_MESSAGE)

    async def handle_transcript(self, role: Optional[str], content: Optional[str]) -> None:
        if not content or not content.strip():
            logger.debug(f"{self._log_prefix()}: Skipping empty transcript turn")
            return
        if role not in ("user", "assistant"):
            role = "system"
        await self._append_turn(role, content.strip())

    async def handle_metadata(self, payload: Any) -> None:
        """Merges a project info payload into the session. Malformed payloads are logged and dropped."""
        try:
            info = json.loads(payload) if isinstance(payload, (str, bytes)) else payload
            if not isinstance(info, dict):
                raise ValueError(f"expected a JSON object, got {type(info).__name__}")
        except (ValueError, TypeError) as e:
            logger.warning(f"{self._log_prefix()}: Ignoring malformed project info: {e}")
            return

        update = map_project_metadata(info)
        if not update:
            logger.debug(f"{self._log_prefix()}: Project info without known fields: {info}")
            return

        ctx = self.context
        async with ctx.metadata_lock:
            fields = dict(update, finalized=True)
            # A session started without a usable document gets generic questions for its title
            questions = None
            if "role" in update and not ctx.questions:
                questions = get_fallback_questions(
                    update.get("level") or ctx.academic_level or DEFAULT_ACADEMIC_LEVEL,
                    update["role"],
                    ", ".join(update.get("techstack") or ctx.technologies) or "your technologies",
                )
                fields["questions"] = questions

            result = await self.session_store.update_partial(ctx.session_id, fields)
            if not result.success:
                logger.error(f"{self._log_prefix()}: Failed to update defense session: {result.error}")
                return

            if questions:
                ctx.questions = questions
                logger.info(f"{self._log_prefix()}: Stored {len(questions)} generic questions for {update['role']}")
            if "role" in update:
                ctx.project_title = update["role"]
            if "level" in update:
                ctx.academic_level = update["level"]
            if "techstack" in update:
                ctx.technologies = list(update["techstack"])

            await self.add_system_turn(f"Project information updated: {', '.join(update.keys())}")
            await self._emit("session_updated", fields=sorted(update.keys()))

    async def handle_speech(self, speaking: bool) -> None:
        self.context.is_speaking = speaking
        await self._emit("speech", speaking=speaking)

    async def handle_error(self, error: Any) -> None:
        message = error if isinstance(error, str) else (str(error) if error else "")
        if not self._apply(Trigger.ERROR):
            return
        self._cancel("watchdog_task")
        await self._process_error(message)

    async def _process_error(self, message: str, kind: Optional[ErrorKind] = None) -> None:
        ctx = self.context

        if not message.strip():
            logger.warning(
                f"{self._log_prefix()}: Empty error payload, treating it as a connectivity error"
            )
            message = EMPTY_ERROR_MESSAGE
            kind = ErrorKind.CONNECTIVITY

        kind = kind or classify_error(message)
        logger.error(f"{self._log_prefix()}: Call error ({kind.value}) in {self.state.phase.value}: {message}")
        ctx.error_message = f"Session error: {message}"
        await self._emit_status()

        if kind == ErrorKind.CONFIGURATION:
            await self._notice(
                "error",
                "API Key Error: A service credential is missing or invalid. Please contact support.",
            )
            await self._navigate("home")
            return

        if kind == ErrorKind.CONNECTIVITY:
            if ctx.reconnect_attempts < self.max_reconnect_attempts:
                ctx.reconnect_attempts += 1
                await self._notice(
                    "info",
                    f"Attempting to reconnect ({ctx.reconnect_attempts}/{self.max_reconnect_attempts})...",
                )
                self._cancel("reconnect_task")
                ctx.reconnect_task = asyncio.create_task(self._reconnect_after_delay())
            else:
                # Connectivity failures never produce feedback
                await self._notice("warning", "Maximum reconnection attempts reached")
                await self._notice("info", "Please try again later when connection is more stable")
                await self._navigate("home")
            return

        await self._notice("error", f"Defense session error: {message}")
        if (
            self.state.phase == SessionPhase.EXAMINATION
            and ctx.ready_for_feedback
            and len(ctx.transcript) >= MIN_FEEDBACK_TURNS
        ):
            await self._generate_feedback()
        else:
            await self._notice("error", "Session error occurred. Please try again later.")
            await self._navigate("home")

    async def _reconnect_after_delay(self) -> None:
        await asyncio.sleep(self.reconnect_delay)
        logger.info(
            f"{self._log_prefix()}: Reconnect attempt {self.context.reconnect_attempts}/{self.max_reconnect_attempts}"
        )
        try:
            await self.start(reconnect=True)
        except InvalidTransitionError as e:
            logger.info(f"{self._log_prefix()}: Reconnect skipped: {e}")
        except ConfigurationError as e:
            await self._process_error(str(e), ErrorKind.CONFIGURATION)
        except CallStartError as e:
            await self._process_error(str(e))

    # -- feedback --------------------------------------------------------

    async def _generate_feedback(self) -> None:
        ctx = self.context
        if ctx.feedback_in_progress:
            logger.info(f"{self._log_prefix()}: Feedback generation already in progress")
            return

        if len(ctx.transcript) < MIN_FEEDBACK_TURNS:
            await self._notice("warning", "The session was too short to generate meaningful feedback")
            await self._navigate("home")
            return

        ctx.feedback_in_progress = True
        try:
            await self._emit("feedback_started")
            result = await self.feedback_generator.generate(
                transcript=list(ctx.transcript),
                session_id=ctx.session_id,
                user_id=ctx.user_id,
                feedback_id=ctx.feedback_id,
            )
        except Exception as e:
            logger.error(f"{self._log_prefix()}: Error in feedback generation: {e}", exc_info=True)
            await self._notice("error", "An error occurred while generating feedback")
            await self._navigate("home")
            return
        finally:
            ctx.feedback_in_progress = False

        if result.success and result.feedback_id:
            ctx.feedback_id = result.feedback_id
            await self._notice("success", "Feedback generated successfully!")
            await self._navigate("feedback")
        else:
            logger.error(f"{self._log_prefix()}: Error saving feedback: {result.error}")
            await self._notice("error", "Failed to save feedback. Returning to dashboard.")
            await self._navigate("home")

    # -- inspection ------------------------------------------------------

    def snapshot(self) -> Dict[str, Any]:
        ctx = self.context
        return {
            "session_id": ctx.session_id,
            "status": self.state.status.value,
            "phase": self.state.phase.value,
            "is_speaking": ctx.is_speaking,
            "ready_for_feedback": ctx.ready_for_feedback,
            "reconnect_attempts": ctx.reconnect_attempts,
            "error_message": ctx.error_message,
            "transcript": list(ctx.transcript),
        }
