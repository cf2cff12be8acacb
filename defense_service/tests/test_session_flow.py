import asyncio

import fitz

from defense_service.backends.mock_backend import MockBackend
from defense_service.components.call_events import CallEvent, CallEventType
from defense_service.components.document_processor import PDF_TYPE, extract_document
from defense_service.components.feedback_generator import FeedbackGenerator
from defense_service.components.phase_controller import CallStatus, SessionPhase, format_questions
from defense_service.components.question_generator import QuestionGenerator, get_fallback_questions
from defense_service.components.session_manager import SessionManager
from defense_service.prompt_builder import CATEGORY_NAMES


def _drain(queue):
    events = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events


def test_full_defense_flow(open_stores, make_transport, sample_transcript):
    """Preparation call, metadata, examination twice, feedback stored and session marked."""

    async def scenario():
        async with open_stores() as (sessions, feedbacks):
            created = await sessions.create({
                "user_id": "u-1",
                "role": "Smart Irrigation",
                "type": "Defense Session",
                "questions": ["How does the moisture model work?"],
            })
            transports = []

            def transport_factory():
                transport = make_transport()
                transports.append(transport)
                return transport

            manager = SessionManager(
                sessions,
                FeedbackGenerator(MockBackend(), sessions, feedbacks),
                transport_factory=transport_factory,
                workflow_id="wf-test",
                phase_transition_delay=0,
                reconnect_delay=0,
                connection_timeout=60,
                feedback_on_first_end=False,
            )
            controller = await manager.create(
                created.id, "u-1", "Ada",
                project_title="Smart Irrigation",
                questions=["How does the moisture model work?"],
                has_document_context=True,
            )
            queue = manager.events(created.id)

            # preparation
            await controller.start()
            await controller.dispatch(CallEvent(CallEventType.CALL_START))
            await controller.dispatch(CallEvent(
                CallEventType.METADATA,
                payload='{"title": "Smart Farm", "academicLevel": "Bachelor\'s", "technologies": ["Python"]}',
            ))
            await controller.dispatch(CallEvent(CallEventType.CALL_END))
            await controller.wait_for_pending()

            assert controller.phase == SessionPhase.EXAMINATION
            assert controller.status == CallStatus.CONNECTING
            session = await sessions.get(created.id)
            assert session["status"] == "Ready for examination"
            assert session["finalized"] is True
            assert session["role"] == "Smart Farm"
            assert session["techstack"] == ["Python"]

            variables = transports[0].started[1]["variables"]
            assert variables["phase"] == "examination"
            assert variables["projectTitle"] == "Smart Farm"
            assert variables["academicLevel"] == "Bachelor's"

            # first examination call ends: back home, feedback on the next end
            await controller.dispatch(CallEvent(CallEventType.CALL_START))
            for turn in sample_transcript:
                await controller.dispatch(CallEvent(CallEventType.TRANSCRIPT, role=turn["role"], content=turn["content"]))
            await controller.dispatch(CallEvent(CallEventType.CALL_END))
            assert controller.context.ready_for_feedback is True
            assert await feedbacks.get_by_session_and_user(created.id, "u-1") is None

            await controller.start()
            await controller.dispatch(CallEvent(CallEventType.CALL_START))
            await controller.dispatch(CallEvent(CallEventType.CALL_END))

            feedback = await feedbacks.get_by_session_and_user(created.id, "u-1")
            assert feedback is not None
            assert feedback["total_score"] == 78
            assert feedback["id"] == controller.context.feedback_id
            assert (await sessions.get(created.id))["has_feedback"] is True

            events = _drain(queue)
            navigations = [e for e in events if e["type"] == "navigate"]
            assert [e["target"] for e in navigations] == ["home", "feedback"]
            assert navigations[-1]["path"] == f"/interview/{created.id}/feedback"

            # released once the user is sent to the feedback page
            assert manager.get(created.id) is None
            assert created.id not in manager.queues
            await manager.close()

    asyncio.run(scenario())


def test_restore_picks_phase_from_status(make_transport):
    async def scenario():
        manager = SessionManager(None, None, transport_factory=make_transport, workflow_id="wf-test")
        ready = await manager.restore({
            "id": "s-1",
            "user_id": "u-1",
            "role": "Smart Farm",
            "level": "Bachelor's",
            "techstack": ["Python"],
            "questions": ["Why MQTT?"],
            "status": "Ready for examination",
            "finalized": True,
        })
        assert ready.phase == SessionPhase.EXAMINATION
        assert ready.context.project_title == "Smart Farm"
        assert ready.context.technologies == ["Python"]
        assert ready.context.has_document_context is True

        fresh = await manager.restore({"id": "s-2", "user_id": "u-1", "role": "Project Defense", "finalized": True})
        assert fresh.phase == SessionPhase.PREPARATION

    asyncio.run(scenario())


def test_replaced_controller_is_stopped(make_transport):
    async def scenario():
        transports = []

        def transport_factory():
            transports.append(make_transport())
            return transports[-1]

        manager = SessionManager(None, None, transport_factory=transport_factory, workflow_id="wf-test")
        first = await manager.create("s-1", "u-1")
        await first.start()

        second = await manager.create("s-1", "u-1")

        assert transports[0].stopped == 1
        assert first.status == CallStatus.FINISHED
        assert manager.get("s-1") is second
        assert transports[1].stopped == 0

    asyncio.run(scenario())


def test_full_event_queue_drops_oldest(make_transport, monkeypatch):
    monkeypatch.setattr("defense_service.components.session_manager.EVENT_QUEUE_SIZE", 3)

    async def scenario():
        manager = SessionManager(None, None, transport_factory=make_transport, workflow_id="wf-test")
        controller = await manager.create("s-1", "u-1")
        for i in range(5):
            await controller.add_system_turn(f"turn {i}")

        events = _drain(manager.events("s-1"))
        assert [e["content"] for e in events] == ["turn 2", "turn 3", "turn 4"]

    asyncio.run(scenario())


def test_controller_released_when_sent_home(make_transport):
    async def scenario():
        manager = SessionManager(
            None, None, transport_factory=make_transport, workflow_id="wf-test", connection_timeout=60
        )
        controller = await manager.create("s-1", "u-1")
        queue = manager.events("s-1")
        await controller.start()
        await controller.dispatch(CallEvent(CallEventType.CALL_START))

        await controller.dispatch(CallEvent(CallEventType.ERROR, error="Invalid API key"))

        assert manager.get("s-1") is None
        assert "s-1" not in manager.queues
        navigation = [e for e in _drain(queue) if e["type"] == "navigate"]
        assert navigation[-1]["target"] == "home"
        assert navigation[-1]["final"] is True

    asyncio.run(scenario())


def test_controller_kept_after_first_examination_end(open_stores, make_transport):
    async def scenario():
        async with open_stores() as (sessions, _):
            created = await sessions.create({"user_id": "u-1", "role": "Smart Farm", "questions": ["Why MQTT?"]})
            manager = SessionManager(
                sessions, None, transport_factory=make_transport, workflow_id="wf-test", connection_timeout=60
            )
            controller = await manager.create(created.id, "u-1", phase=SessionPhase.EXAMINATION)
            await controller.start()
            await controller.dispatch(CallEvent(CallEventType.CALL_START))
            await controller.dispatch(CallEvent(CallEventType.CALL_END))

            assert controller.context.ready_for_feedback is True
            assert manager.get(created.id) is controller
            navigation = [e for e in _drain(manager.events(created.id)) if e["type"] == "navigate"]
            assert navigation == [{
                "type": "navigate",
                "session_id": created.id,
                "target": "home",
                "path": "/",
                "final": False,
            }]

            await manager.close()

    asyncio.run(scenario())


def _library_pdf():
    doc = fitz.open()
    for chapter in range(1, 6):
        page = doc.new_page()
        page.insert_text((72, 72), f"Chapter {chapter}: Library System catalogue and loan service design")
    data = doc.tobytes()
    doc.close()
    return data


def test_upload_to_feedback_with_unreachable_evaluator(open_stores, make_evaluator, make_transport):
    """PDF upload, fallback questions, metadata merge, examination, feedback with five categories."""

    async def scenario():
        async with open_stores() as (sessions, feedbacks):
            extraction = extract_document(_library_pdf(), PDF_TYPE, "library.pdf")
            assert extraction.success is True
            assert "Library System" in extraction.text

            unreachable = make_evaluator(error=ConnectionError("evaluator unreachable"))
            questions = await QuestionGenerator(unreachable).generate(document_text=extraction.text)
            assert questions == get_fallback_questions("Master's", "Project Defense", "Not specified")

            created = await sessions.create({
                "user_id": "u-1",
                "role": "library",
                "type": "Defense Session",
                "questions": questions,
                "finalized": False,
            })
            assert (await sessions.get(created.id))["finalized"] is False

            scorer = make_evaluator(structured={
                "total_score": 72,
                "category_scores": [{"name": "Technical Accuracy", "score": 70, "comment": "Fine."}],
            })
            transport = make_transport()
            manager = SessionManager(
                sessions,
                FeedbackGenerator(scorer, sessions, feedbacks),
                transport_factory=lambda: transport,
                workflow_id="wf-test",
                phase_transition_delay=0,
                connection_timeout=60,
            )
            controller = await manager.create(created.id, "u-1", project_title="library", questions=questions,
                                              has_document_context=True)

            await controller.start()
            await controller.dispatch(CallEvent(CallEventType.CALL_START))
            await controller.dispatch(CallEvent(
                CallEventType.METADATA, payload={"title": "Library System", "academicLevel": "Master's"},
            ))
            session = await sessions.get(created.id)
            assert session["role"] == "Library System"
            assert session["level"] == "Master's"
            assert session["finalized"] is True

            await controller.dispatch(CallEvent(CallEventType.CALL_END))
            await controller.wait_for_pending()

            examination = transport.started[1]["variables"]
            assert examination["phase"] == "examination"
            assert examination["questions"] == format_questions(questions)

            controller.context.transcript = []
            controller.context.ready_for_feedback = True
            await controller.dispatch(CallEvent(CallEventType.CALL_START))
            for i in range(8):
                role = "assistant" if i % 2 == 0 else "user"
                await controller.dispatch(CallEvent(CallEventType.TRANSCRIPT, role=role, content=f"turn {i}"))
            await controller.dispatch(CallEvent(CallEventType.CALL_END))

            feedback = await feedbacks.get_by_session_and_user(created.id, "u-1")
            assert [c["name"] for c in feedback["category_scores"]] == CATEGORY_NAMES
            assert feedback["total_score"] == 72
            assert (await sessions.get(created.id))["feedback_generated"] is not None

            await manager.close()

    asyncio.run(scenario())
