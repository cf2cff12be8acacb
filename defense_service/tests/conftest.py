from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

import pytest

from defense_service.components.feedback_generator import FeedbackResult
from defense_service.components.phase_controller import PhaseController, SessionContext, SessionPhase
from defense_service.database import Database, FeedbackStore, SessionStore, StoreResult


class FakeEvaluator:
    """Evaluator double: canned text / structured answer, or an error."""

    backend_name = "fake"
    model_name = "fake-model"

    def __init__(self, text: str = "", structured: Optional[Dict[str, Any]] = None,
                 error: Optional[Exception] = None, configured: bool = True):
        self.text = text
        self.structured = structured or {}
        self.error = error
        self.configured = configured
        self.calls: List[Dict[str, Any]] = []

    @property
    def is_configured(self) -> bool:
        return self.configured

    async def generate_text(self, prompt, system=None, temperature=0.3):
        self.calls.append({"prompt": prompt, "system": system, "temperature": temperature})
        if self.error:
            raise self.error
        return self.text

    async def generate_structured(self, prompt, schema, system=None, temperature=0.2):
        self.calls.append({"prompt": prompt, "system": system, "temperature": temperature})
        if self.error:
            raise self.error
        return schema.model_validate(self.structured)


class FakeTransport:
    """
    Voice transport double. `errors` is consumed one entry per start():
    None succeeds, an exception is raised.
    """

    def __init__(self, errors: Optional[List[Optional[Exception]]] = None, stop_error: Optional[Exception] = None):
        self.errors = list(errors or [])
        self.stop_error = stop_error
        self.started: List[Dict[str, Any]] = []
        self.stopped = 0

    async def start(self, workflow_id, variable_values):
        self.started.append({"workflow_id": workflow_id, "variables": dict(variable_values)})
        error = self.errors.pop(0) if self.errors else None
        if error is not None:
            raise error
        return {"id": f"call-{len(self.started)}", "webCallUrl": "https://calls.example.test/room"}

    async def stop(self):
        self.stopped += 1
        if self.stop_error:
            raise self.stop_error


class FakeSessionStore:
    """In-memory stand-in for SessionStore"""

    def __init__(self):
        self.sessions: Dict[str, Dict[str, Any]] = {}
        self.updates: List[Dict[str, Any]] = []

    async def get(self, session_id):
        session = self.sessions.get(session_id)
        return dict(session) if session else None

    async def update_partial(self, session_id, fields):
        self.updates.append(dict(fields))
        if session_id not in self.sessions:
            return StoreResult(success=False, id=session_id, error="Session not found")
        self.sessions[session_id].update({k: v for k, v in fields.items() if v is not None})
        return StoreResult(success=True, id=session_id)


class FakeFeedbackGenerator:
    def __init__(self, result: Optional[FeedbackResult] = None):
        self.result = result or FeedbackResult(success=True, feedback_id="fb-1")
        self.calls: List[Dict[str, Any]] = []

    async def generate(self, transcript, session_id, user_id, feedback_id=None):
        self.calls.append({
            "transcript": list(transcript),
            "session_id": session_id,
            "user_id": user_id,
            "feedback_id": feedback_id,
        })
        return self.result


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'defense.db'}"


@pytest.fixture
def open_stores(database_url):
    """Async context manager yielding (SessionStore, FeedbackStore) on a fresh SQLite file."""

    @asynccontextmanager
    async def _open():
        database = Database(database_url)
        await database.initialize()
        try:
            yield SessionStore(database), FeedbackStore(database)
        finally:
            await database.close()

    return _open


@pytest.fixture
def make_evaluator():
    return FakeEvaluator


@pytest.fixture
def make_transport():
    return FakeTransport


@pytest.fixture
def make_controller():
    """
    Builds a PhaseController wired to in-memory doubles. Returns the
    controller; the doubles and the emitted UI events hang off it as
    `.store`, `.feedback`, `.events`.
    """

    def _make(transport=None, phase=SessionPhase.PREPARATION, **options):
        store = FakeSessionStore()
        store.sessions["s-1"] = {
            "id": "s-1",
            "user_id": "u-1",
            "role": "Smart Irrigation",
            "level": "To be determined during preparation",
            "techstack": [],
            "questions": ["How does the moisture model work?"],
            "status": None,
        }
        feedback = FakeFeedbackGenerator()
        events: List[Dict[str, Any]] = []

        async def notify(event):
            events.append(event)

        settings = {
            "workflow_id": "wf-test",
            "phase_transition_delay": 0,
            "reconnect_delay": 0,
            "connection_timeout": 60,
        }
        settings.update(options)

        controller = PhaseController(
            context=SessionContext(
                session_id="s-1",
                user_id="u-1",
                user_name="Ada",
                project_title="Smart Irrigation",
                questions=["How does the moisture model work?"],
                has_document_context=True,
            ),
            transport=transport or FakeTransport(),
            session_store=store,
            feedback_generator=feedback,
            notify=notify,
            initial_phase=phase,
            **settings,
        )
        controller.store = store
        controller.feedback = feedback
        controller.events = events
        return controller

    return _make


@pytest.fixture
def sample_transcript():
    return [
        {"role": "assistant", "content": "Explain the overall architecture of your project."},
        {"role": "user", "content": "It is a FastAPI service with a sensor ingestion worker and a PostgreSQL store."},
        {"role": "assistant", "content": "Why PostgreSQL and not a time-series database?"},
        {"role": "user", "content": "The data volume is small and we needed relational joins with the field registry."},
    ]
