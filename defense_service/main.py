"""
FastAPI application for the project defense coach.
Extracts project documents, drives the two-phase voice call and scores the defense.
"""

import asyncio
import base64
import binascii
import json
import logging
import os
from typing import Any, Dict, List, Optional, Set

from dotenv import find_dotenv, load_dotenv
from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

load_dotenv(find_dotenv())

# Configure logging
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S"
)
logger = logging.getLogger(__name__)

from .backends import create_backend
from .components.call_events import CallEventType, extract_session_id, from_sdk_event, from_server_message
from .components.document_processor import extract_document, strip_document_extension
from .components.examiner import Examiner
from .components.feedback_generator import FeedbackGenerator, MIN_TRANSCRIPT_TURNS
from .components.phase_controller import PREPARATION_STARTED_MESSAGE, PhaseController, SessionPhase
from .components.question_generator import QuestionGenerator
from .components.session_manager import SessionManager
from .database import Database, FeedbackStore, SessionStore, delete_session_with_feedback
from .errors import CallStartError, ConfigurationError, EvaluatorNotConfiguredError, InvalidTransitionError
from .models import (
    CallEventRequest,
    ControllerStateResponse,
    CreateSessionRequest,
    CreateSessionResponse,
    ExaminationRequest,
    ExaminationResponse,
    ExtractDocumentRequest,
    ExtractionResponse,
    FeedbackResponse,
    GenerateFeedbackRequest,
    GenerateQuestionsRequest,
    QuestionsResponse,
    SessionResponse,
)

# Initialize FastAPI app
app = FastAPI(
    title="Project Defense Coach",
    description="Prepares students for academic project defenses with a two-phase voice call",
    version="0.1.0"
)

# CORS middleware for frontend communication
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Global instances
database = Database()
session_store = SessionStore(database)
feedback_store = FeedbackStore(database)
evaluator = None
question_generator: Optional[QuestionGenerator] = None
feedback_generator: Optional[FeedbackGenerator] = None
examiner: Optional[Examiner] = None
session_manager: Optional[SessionManager] = None

# Track active WebSocket connections
active_websocket_connections: Set[WebSocket] = set()


@app.on_event("startup")
async def startup():
    """Initialize database, evaluator and session manager on startup"""
    global evaluator, question_generator, feedback_generator, examiner, session_manager
    logger.info("Starting services...")
    try:
        await database.initialize()

        evaluator = create_backend()
        question_generator = QuestionGenerator(evaluator)
        feedback_generator = FeedbackGenerator(evaluator, session_store, feedback_store)
        examiner = Examiner(evaluator)
        session_manager = SessionManager(session_store, feedback_generator)

        if not os.getenv("VAPI_WORKFLOW_ID"):
            logger.warning("VAPI_WORKFLOW_ID not set. Voice calls cannot be started.")
        logger.info("Defense coach services initialized successfully!")
    except Exception as e:
        logger.error(f"Error initializing services: {str(e)}", exc_info=True)
        raise


@app.on_event("shutdown")
async def shutdown():
    """Cleanup on shutdown"""
    if session_manager is not None:
        await session_manager.close()
    await database.close()


def _decode_file(file_base64: str) -> bytes:
    """Accepts plain base64 or a data: URL"""
    value = file_base64.split(",", 1)[1] if file_base64.startswith("data:") else file_base64
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as e:
        raise HTTPException(status_code=400, detail=f"Invalid base64 file content: {e}")


async def _get_session_or_404(session_id: str) -> Dict[str, Any]:
    session = await session_store.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    return session


async def _get_controller(session_id: str, user_name: str = "") -> PhaseController:
    """Live controller of a session, rebuilt from the store when the process restarted"""
    controller = session_manager.get(session_id)
    if controller is None:
        session = await _get_session_or_404(session_id)
        controller = await session_manager.restore(session, user_name=user_name)
    return controller


@app.get("/")
async def root():
    """Health check endpoint"""
    return {
        "service": "defense-coach",
        "status": "running",
        "version": "0.1.0"
    }


@app.get("/health")
async def health():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "database": "connected" if database.initialized else "disconnected",
        "evaluator": {
            "backend": getattr(evaluator, "backend_name", "not initialized"),
            "model": getattr(evaluator, "model_name", None),
            "configured": bool(getattr(evaluator, "is_configured", False)),
        },
        "voice": {
            "workflow_id_set": bool(os.getenv("VAPI_WORKFLOW_ID")),
            "api_key_set": bool(os.getenv("VAPI_API_KEY")),
        },
        "active_sessions": len(session_manager.controllers) if session_manager else 0,
        "websocket_connections": len(active_websocket_connections)
    }


@app.post("/api/documents/extract", response_model=ExtractionResponse)
async def extract_document_endpoint(request: ExtractDocumentRequest):
    """Extract plain text from an uploaded PDF, DOCX or PPTX"""
    data = _decode_file(request.file_base64)
    result = extract_document(data, request.content_type, request.file_name)
    return ExtractionResponse(**result.to_dict())


@app.post("/api/questions/generate", response_model=QuestionsResponse)
async def generate_questions(request: GenerateQuestionsRequest):
    """Generate defense questions from document text (falls back to generic questions)"""
    questions = await question_generator.generate(
        document_text=request.document_text,
        academic_level=request.academic_level,
        project_title=request.project_title,
        technologies=request.technologies,
        focus_ratio=request.focus_ratio,
        question_count=request.question_count,
    )
    return QuestionsResponse(questions=questions, count=len(questions))


@app.post("/api/sessions", response_model=CreateSessionResponse)
async def create_session(request: CreateSessionRequest):
    """
    Create a defense session.

    Extracts the optional document, generates questions, stores the session
    with placeholder metadata and starts the preparation call.
    """
    try:
        extraction = None
        questions: List[str] = []
        title = "Project Defense"

        if request.file_base64:
            file_name = request.file_name or "document"
            data = _decode_file(request.file_base64)
            extraction = extract_document(data, request.content_type, file_name)
            title = strip_document_extension(file_name) or title

            if extraction.success and extraction.text:
                questions = await question_generator.generate(document_text=extraction.text)
                logger.info(f"Generated {len(questions)} questions from {file_name}")
            else:
                logger.warning(f"Could not analyze {file_name}, continuing without document: {extraction.error}")

        result = await session_store.create({
            "user_id": request.user_id,
            "role": title,
            "type": "Defense Session",
            "techstack": [],
            "level": "To be determined during preparation",
            "focus_ratio": "To be determined during preparation",
            "questions": questions,
            "finalized": False,
        })
        if not result.success:
            raise HTTPException(status_code=500, detail=f"Failed to create defense session: {result.error}")

        controller = await session_manager.create(
            session_id=result.id,
            user_id=request.user_id,
            user_name=request.user_name,
            project_title=title,
            questions=questions,
            has_document_context=bool(extraction and extraction.success),
        )
        await controller.add_system_turn(PREPARATION_STARTED_MESSAGE)

        call_started = False
        call_error = None
        if request.start_call:
            try:
                await controller.start(SessionPhase.PREPARATION)
                call_started = True
            except (ConfigurationError, CallStartError) as e:
                call_error = getattr(e, "user_message", None) or str(e)
                logger.warning(f"Preparation call for session {result.id} not started: {call_error}")

        session = await _get_session_or_404(result.id)
        return CreateSessionResponse(
            session=SessionResponse(**session),
            extraction=ExtractionResponse(**extraction.to_dict()) if extraction else None,
            call_started=call_started,
            call_error=call_error,
        )

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error creating defense session: {str(e)}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Failed to create defense session: {str(e)}")


@app.get("/api/sessions", response_model=List[SessionResponse])
async def list_sessions(user_id: str):
    """All sessions of a user, newest first"""
    return [SessionResponse(**s) for s in await session_store.list_by_user(user_id)]


@app.get("/api/sessions/latest", response_model=List[SessionResponse])
async def latest_sessions(user_id: str, limit: int = 20):
    """Finalized sessions of other users, newest first"""
    return [SessionResponse(**s) for s in await session_store.list_others(user_id, limit=limit)]


@app.get("/api/sessions/{session_id}", response_model=SessionResponse)
async def get_session(session_id: str):
    return SessionResponse(**await _get_session_or_404(session_id))


@app.delete("/api/sessions/{session_id}")
async def delete_session(session_id: str, feedback_id: Optional[str] = None, user_id: Optional[str] = None):
    """Delete a session and its feedback. A failed feedback deletion does not block the session deletion."""
    if not feedback_id and user_id:
        feedback = await feedback_store.get_by_session_and_user(session_id, user_id)
        if feedback:
            feedback_id = feedback["id"]

    await session_manager.remove(session_id)
    result = await delete_session_with_feedback(session_store, feedback_store, session_id, feedback_id)

    if not result["session_deleted"]:
        status_code = 404 if any("not found" in err.lower() for err in result["errors"]) else 500
        raise HTTPException(status_code=status_code, detail="; ".join(result["errors"]))

    logger.info(f"Deleted session {session_id} (feedback_deleted={result['feedback_deleted']})")
    return result


@app.get("/api/sessions/{session_id}/state", response_model=ControllerStateResponse)
async def get_call_state(session_id: str):
    controller = session_manager.get(session_id)
    if controller is None:
        raise HTTPException(status_code=404, detail=f"No active call controller for session {session_id}")
    return ControllerStateResponse(**controller.snapshot())


@app.post("/api/sessions/{session_id}/call/start", response_model=ControllerStateResponse)
async def start_call(session_id: str, phase: Optional[SessionPhase] = None, user_name: str = ""):
    """Manual (re)start of the current phase, or of an explicit phase"""
    controller = await _get_controller(session_id, user_name=user_name)
    try:
        await controller.start(phase)
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ConfigurationError as e:
        logger.error(f"Configuration error starting call for session {session_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e))
    except CallStartError as e:
        raise HTTPException(status_code=502, detail=e.user_message)
    return ControllerStateResponse(**controller.snapshot())


@app.post("/api/sessions/{session_id}/call/stop", response_model=ControllerStateResponse)
async def stop_call(session_id: str):
    """Stop the call without advancing the session"""
    controller = await _get_controller(session_id)
    await controller.stop()
    return ControllerStateResponse(**controller.snapshot())


@app.post("/api/sessions/{session_id}/call/end", response_model=ControllerStateResponse)
async def end_call(session_id: str):
    """User hang-up: ends the call and moves the session on like a normal call end"""
    controller = await _get_controller(session_id)
    await controller.end_call()
    return ControllerStateResponse(**controller.snapshot())


@app.post("/api/sessions/{session_id}/call/events", response_model=ControllerStateResponse)
async def post_call_event(session_id: str, request: CallEventRequest):
    """Browser SDK event delivered over HTTP"""
    controller = await _get_controller(session_id)
    event = from_sdk_event(request.event, request.payload)
    if event.type != CallEventType.IGNORED:
        await controller.dispatch(event)
    return ControllerStateResponse(**controller.snapshot())


@app.get("/api/sessions/{session_id}/feedback", response_model=FeedbackResponse)
async def get_feedback(session_id: str, user_id: str):
    feedback = await feedback_store.get_by_session_and_user(session_id, user_id)
    if feedback is None:
        raise HTTPException(status_code=404, detail=f"No feedback for session {session_id}")
    return FeedbackResponse(**feedback)


@app.post("/api/sessions/{session_id}/feedback", response_model=FeedbackResponse)
async def generate_feedback(session_id: str, request: GenerateFeedbackRequest):
    """(Re)generate feedback for a transcript; an existing feedback_id is replaced"""
    await _get_session_or_404(session_id)
    if len(request.transcript) < MIN_TRANSCRIPT_TURNS:
        raise HTTPException(status_code=400, detail="Not enough conversation data to generate feedback")

    result = await feedback_generator.generate(
        transcript=request.transcript,
        session_id=session_id,
        user_id=request.user_id,
        feedback_id=request.feedback_id,
    )
    if not result.success:
        raise HTTPException(status_code=500, detail=result.error or "Feedback generation failed")

    feedback = await feedback_store.get(result.feedback_id)
    if feedback is None:
        raise HTTPException(status_code=500, detail="Feedback was stored but could not be read back")
    return FeedbackResponse(**feedback)


@app.post("/api/vapi/events")
async def vapi_events(body: Dict[str, Any], session_id: Optional[str] = None):
    """Server messages of the voice provider"""
    session_id = session_id or extract_session_id(body)
    if not session_id:
        raise HTTPException(status_code=400, detail="sessionId is missing from the call")

    controller = await _get_controller(session_id)
    event = from_server_message(body)
    if event.type != CallEventType.IGNORED:
        await controller.dispatch(event)
    return {"ok": True, "session_id": session_id, "event": event.type.value}


@app.post("/api/vapi/examination", response_model=ExaminationResponse)
async def vapi_examination(request: ExaminationRequest):
    """Examiner turn requested by the voice workflow during the examination phase"""
    try:
        response = await examiner.respond(request)
        return ExaminationResponse(response=response)
    except EvaluatorNotConfiguredError as e:
        logger.error(f"Examiner is not configured: {e}")
        raise HTTPException(status_code=500, detail=str(e))
    except Exception as e:
        logger.error(f"Error in examination response for session {request.session_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to generate examination response")


async def forward_events(websocket: WebSocket, queue: asyncio.Queue, session_id: str) -> None:
    """Streams controller UI events to one WebSocket. An event that could not be sent goes back to the queue."""
    while True:
        event = await queue.get()
        try:
            await websocket.send_json(event)
        except Exception as e:
            logger.warning(f"Could not forward {event.get('type')} event to session {session_id}: {e}")
            if not queue.full():
                queue.put_nowait(event)
            raise


@app.websocket("/ws/session/{session_id}")
async def websocket_session(websocket: WebSocket, session_id: str):
    """
    WebSocket endpoint between the browser and the phase controller.

    Receives Web SDK events ({"type": "call-start" | "call-end" | "message" |
    "speech-start" | "speech-end" | "error", "payload": ...}) plus
    start_call / end_call / ping, and streams controller UI events back.
    """
    await websocket.accept()
    active_websocket_connections.add(websocket)
    logger.info(f"WebSocket connection established for session {session_id}")

    controller = session_manager.get(session_id) if session_manager else None
    if controller is None:
        session = await session_store.get(session_id)
        if session is not None:
            controller = await session_manager.restore(session)
    if controller is None:
        await websocket.send_json({
            "type": "error",
            "message": "Session not found. Please create a defense session first."
        })
        await websocket.close()
        active_websocket_connections.discard(websocket)
        return

    queue = session_manager.events(session_id)

    await websocket.send_json({"type": "connected", **controller.snapshot()})
    sender = asyncio.create_task(forward_events(websocket, queue, session_id))

    try:
        while True:
            try:
                data = await websocket.receive_text()
                message = json.loads(data)
            except WebSocketDisconnect:
                logger.info("WebSocket disconnected")
                break
            except json.JSONDecodeError as e:
                logger.error(f"Error parsing JSON: {e}")
                continue

            message_type = message.get("type")
            logger.debug(f"Received WebSocket message type: {message_type}")

            if message_type == "ping":
                await websocket.send_json({"type": "pong"})
            elif message_type == "start_call":
                try:
                    await controller.start()
                except (InvalidTransitionError, ConfigurationError, CallStartError) as e:
                    await websocket.send_json({
                        "type": "error",
                        "message": getattr(e, "user_message", None) or str(e)
                    })
            elif message_type == "end_call":
                await controller.end_call()
            else:
                event = from_sdk_event(message_type, message.get("payload"))
                if event.type != CallEventType.IGNORED:
                    await controller.dispatch(event)

    except WebSocketDisconnect:
        logger.info(f"Client disconnected from session {session_id}")
    except RuntimeError as e:
        if "WebSocket is not connected" in str(e):
            logger.info(f"WebSocket connection lost for session {session_id}")
        else:
            logger.error(f"Runtime error in WebSocket handler for session {session_id}: {e}", exc_info=True)
    except Exception as e:
        logger.error(f"Error in WebSocket handler for session {session_id}: {e}", exc_info=True)
        try:
            await websocket.send_json({
                "type": "error",
                "message": f"Error: {str(e)}"
            })
        except (RuntimeError, ConnectionError):
            logger.warning("Could not send error message - WebSocket already disconnected")
    finally:
        sender.cancel()
        try:
            await sender
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.warning(f"Event forwarding for session {session_id} stopped: {e}")
        active_websocket_connections.discard(websocket)
