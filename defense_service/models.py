# defense_service/models.py

from pydantic import BaseModel, Field
from typing import List, Optional, Dict, Any


class Turn(BaseModel):
    role: str  # "user", "assistant" or "system"
    content: str


class CategoryScore(BaseModel):
    # Evaluator output may leave any of these out; the feedback generator fills them
    name: Optional[str] = None
    score: Optional[float] = None
    comment: Optional[str] = None


class DefenseEvaluation(BaseModel):
    """Structured answer expected from the evaluator when scoring a defense.

    Every field is optional: the evaluator output is not guaranteed to be
    complete, missing values are defaulted by the feedback generator.
    """
    total_score: Optional[float] = None
    category_scores: Optional[List[CategoryScore]] = None
    strengths: Optional[List[str]] = None
    areas_for_improvement: Optional[List[str]] = None
    final_assessment: Optional[str] = None
    document_gaps: Optional[List[str]] = None
    implementation_suggestions: Optional[List[str]] = None


# Request models

class ExtractDocumentRequest(BaseModel):
    file_name: str
    content_type: str = ""
    file_base64: str


class GenerateQuestionsRequest(BaseModel):
    document_text: str = ""
    academic_level: str = "Master's"
    project_title: str = "Project Defense"
    technologies: List[str] = Field(default_factory=list)
    focus_ratio: Optional[str] = None
    question_count: int = Field(default=10, ge=1, le=10)


class CreateSessionRequest(BaseModel):
    user_id: str
    user_name: str = ""
    file_name: Optional[str] = None
    content_type: str = ""
    file_base64: Optional[str] = None
    start_call: bool = True


class GenerateFeedbackRequest(BaseModel):
    user_id: str
    transcript: List[Turn]
    feedback_id: Optional[str] = None


class ExaminationRequest(BaseModel):
    session_id: Optional[str] = None
    project_title: Optional[str] = None
    academic_level: Optional[str] = None
    technologies: Optional[str] = None
    questions: Optional[str] = None
    project_context: Optional[str] = None
    message: str = ""
    previous_messages: List[Turn] = Field(default_factory=list)


class CallEventRequest(BaseModel):
    """Browser SDK event forwarded by the client over HTTP instead of WebSocket"""
    event: str
    payload: Any = None  # object for "message", string or object for "error"


# Response models

class ExtractionResponse(BaseModel):
    text: str
    success: bool
    error: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class QuestionsResponse(BaseModel):
    questions: List[str]
    count: int


class SessionResponse(BaseModel):
    id: str
    user_id: str
    role: str
    type: str
    level: str
    techstack: List[str]
    focus_ratio: str
    questions: List[str]
    finalized: bool
    status: Optional[str] = None
    has_feedback: bool = False
    feedback_generated: Optional[str] = None
    created_at: str
    updated_at: Optional[str] = None


class CreateSessionResponse(BaseModel):
    session: SessionResponse
    extraction: Optional[ExtractionResponse] = None
    call_started: bool
    call_error: Optional[str] = None


class FeedbackResponse(BaseModel):
    id: str
    session_id: str
    user_id: str
    total_score: float
    category_scores: List[CategoryScore]
    strengths: List[str]
    areas_for_improvement: List[str]
    final_assessment: str
    document_gaps: List[str]
    implementation_suggestions: List[str]
    created_at: str


class ControllerStateResponse(BaseModel):
    session_id: str
    status: str
    phase: str
    is_speaking: bool
    ready_for_feedback: bool
    reconnect_attempts: int
    error_message: str
    transcript: List[Turn]


class ExaminationResponse(BaseModel):
    response: str
