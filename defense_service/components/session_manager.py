import asyncio
from typing import Any, Callable, Dict, List, Optional
import logging

from .phase_controller import PhaseController, SessionContext, SessionPhase
from .vapi_client import VapiClient

logger = logging.getLogger(__name__)

READY_FOR_EXAMINATION = "Ready for examination"
EVENT_QUEUE_SIZE = 200


class SessionManager:
    """Keeps one PhaseController and one UI event queue per live defense session"""

    def __init__(
        self,
        session_store,
        feedback_generator,
        transport_factory: Callable[[], Any] = VapiClient,
        **controller_options,
    ):
        self.session_store = session_store
        self.feedback_generator = feedback_generator
        self.transport_factory = transport_factory
        self.controller_options = controller_options
        self.controllers: Dict[str, PhaseController] = {}
        self.queues: Dict[str, asyncio.Queue] = {}
        logger.info("SessionManager: Initialized")

    def events(self, session_id: str) -> asyncio.Queue:
        """UI event queue of a session, created on first use"""
        if session_id not in self.queues:
            self.queues[session_id] = asyncio.Queue(maxsize=EVENT_QUEUE_SIZE)
        return self.queues[session_id]

    def _evict(self, session_id: str, controller: PhaseController) -> None:
        # A replacement controller owns the entries by now
        if self.controllers.get(session_id) is not controller:
            return
        self.controllers.pop(session_id, None)
        self.queues.pop(session_id, None)
        logger.info(f"SessionManager: Session {session_id} finished, controller released")

    def _notifier(self, session_id: str, controller: PhaseController):
        queue = self.events(session_id)

        async def notify(event: Dict[str, Any]) -> None:
            if queue.full():
                dropped = queue.get_nowait()
                logger.warning(
                    f"SessionManager: Event queue of session {session_id} is full, "
                    f"dropping oldest {dropped.get('type')} event"
                )
            queue.put_nowait(event)

            # Sent away from the call page for good
            if event.get("type") == "navigate" and event.get("final", True):
                self._evict(session_id, controller)

        return notify

    async def create(
        self,
        session_id: str,
        user_id: str,
        user_name: str = "",
        project_title: str = "Project Defense",
        questions: Optional[List[str]] = None,
        has_document_context: bool = False,
        phase: SessionPhase = SessionPhase.PREPARATION,
    ) -> PhaseController:
        """Create (or replace) the controller of a session. A replaced controller is stopped."""
        existing = self.controllers.pop(session_id, None)
        if existing is not None:
            logger.warning(f"SessionManager: Replacing controller of session {session_id}")
            await existing.stop()

        context = SessionContext(
            session_id=session_id,
            user_id=user_id,
            user_name=user_name,
            project_title=project_title,
            questions=list(questions or []),
            has_document_context=has_document_context,
        )
        controller = PhaseController(
            context=context,
            transport=self.transport_factory(),
            session_store=self.session_store,
            feedback_generator=self.feedback_generator,
            initial_phase=phase,
            **self.controller_options,
        )
        controller.notify = self._notifier(session_id, controller)
        self.controllers[session_id] = controller
        logger.info(f"SessionManager: Controller created for session {session_id} (phase={phase.value})")
        return controller

    async def restore(self, session: Dict[str, Any], user_name: str = "") -> PhaseController:
        """Rebuild a controller from a stored session, e.g. after a restart"""
        phase = SessionPhase.PREPARATION
        if session.get("status") == READY_FOR_EXAMINATION:
            phase = SessionPhase.EXAMINATION

        controller = await self.create(
            session_id=session["id"],
            user_id=session["user_id"],
            user_name=user_name,
            project_title=session.get("role") or "Project Defense",
            questions=session.get("questions") or [],
            has_document_context=bool(session.get("questions")),
            phase=phase,
        )
        controller.context.academic_level = session.get("level") or ""
        controller.context.technologies = list(session.get("techstack") or [])
        logger.info(f"SessionManager: Restored session {session['id']} in phase {phase.value}")
        return controller

    def get(self, session_id: str) -> Optional[PhaseController]:
        controller = self.controllers.get(session_id)
        if controller is None:
            logger.warning(f"SessionManager: Session {session_id} not found")
        return controller

    async def remove(self, session_id: str) -> None:
        controller = self.controllers.pop(session_id, None)
        self.queues.pop(session_id, None)
        if controller is not None:
            await controller.stop()
            logger.info(f"SessionManager: Session {session_id} removed")

    async def close(self) -> None:
        for session_id in list(self.controllers):
            await self.remove(session_id)
