import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from ..database import FeedbackStore, SessionStore, utcnow
from ..models import DefenseEvaluation, Turn
from ..prompt_builder import CATEGORY_NAMES, build_feedback_prompt, build_feedback_system_prompt

logger = logging.getLogger(__name__)

MIN_TRANSCRIPT_TURNS = 3
DEFAULT_TOTAL_SCORE = 75
DEFAULT_ASSESSMENT = "The defense was completed successfully."
MISSING_CATEGORY_COMMENT = "No detailed assessment was provided for this category."
FEEDBACK_TEMPERATURE = 0.2

# Written when no evaluator credentials are configured
SIMPLIFIED_CATEGORY_SCORES = [
    {
        "name": "Technical Accuracy",
        "score": 75,
        "comment": "The candidate demonstrated basic understanding of the technical concepts.",
    },
    {
        "name": "Documentation Alignment",
        "score": 70,
        "comment": "The answers were broadly consistent with the project description.",
    },
    {
        "name": "Response Structure",
        "score": 80,
        "comment": "Responses were generally clear and addressed the questions.",
    },
    {
        "name": "Critical Thinking",
        "score": 72,
        "comment": "Challenges from the examiner were handled with reasonable arguments.",
    },
    {
        "name": "Time Management",
        "score": 78,
        "comment": "Answers stayed mostly focused on the questions asked.",
    },
]
SIMPLIFIED_STRENGTHS = [
    "Able to explain the project fundamentals",
    "Shows enthusiasm for the subject matter",
    "Provided concrete examples when asked",
]
SIMPLIFIED_IMPROVEMENTS = [
    "Could improve on technical depth in responses",
    "Consider providing more implementation details",
    "Practice explaining complex concepts more clearly",
]
SIMPLIFIED_ASSESSMENT = (
    "The defense demonstration showed competency in the subject matter with room for improvement "
    "in technical depth. Continue developing expertise in implementation details and critical analysis."
)


@dataclass
class FeedbackResult:
    success: bool
    feedback_id: Optional[str] = None
    error: Optional[str] = None
    feedback: Optional[Dict[str, Any]] = None


def _clamp_score(value: Any, default: float) -> float:
    try:
        score = float(value)
    except (TypeError, ValueError):
        return default
    return max(0.0, min(100.0, score))


def _as_turns(transcript: List[Any]) -> List[Dict[str, str]]:
    turns = []
    for turn in transcript:
        if isinstance(turn, Turn):
            turns.append({"role": turn.role, "content": turn.content})
        else:
            turns.append({"role": str(turn.get("role", "system")), "content": str(turn.get("content", ""))})
    return turns


def normalize_category_scores(categories: Optional[List[Any]], total_score: float) -> List[Dict[str, Any]]:
    """
    Always five categories, fixed names, fixed order.

    Categories are matched by name first; an unnamed or misnamed entry
    at the same position is used otherwise. Missing categories and missing
    scores get the total score.
    """
    categories = list(categories or [])
    known = {name.lower() for name in CATEGORY_NAMES}
    by_name = {}
    for category in categories:
        if category.name:
            by_name.setdefault(category.name.strip().lower(), category)

    result = []
    for index, name in enumerate(CATEGORY_NAMES):
        category = by_name.get(name.lower())
        if category is None and index < len(categories):
            positional = categories[index]
            if (positional.name or "").strip().lower() not in known:
                category = positional

        if category is None:
            result.append({"name": name, "score": total_score, "comment": MISSING_CATEGORY_COMMENT})
        else:
            result.append({
                "name": name,
                "score": _clamp_score(category.score, total_score),
                "comment": category.comment or MISSING_CATEGORY_COMMENT,
            })
    return result


def normalize_evaluation(evaluation: DefenseEvaluation) -> Dict[str, Any]:
    """Defaults every field the evaluator left out."""
    if evaluation.total_score is None:
        total_score = float(DEFAULT_TOTAL_SCORE)
    else:
        total_score = _clamp_score(evaluation.total_score, float(DEFAULT_TOTAL_SCORE))

    return {
        "total_score": total_score,
        "category_scores": normalize_category_scores(evaluation.category_scores, total_score),
        "strengths": list(evaluation.strengths or []),
        "areas_for_improvement": list(evaluation.areas_for_improvement or []),
        "final_assessment": evaluation.final_assessment or DEFAULT_ASSESSMENT,
        "document_gaps": list(evaluation.document_gaps or []),
        "implementation_suggestions": list(evaluation.implementation_suggestions or []),
    }


def simplified_feedback() -> Dict[str, Any]:
    return {
        "total_score": float(DEFAULT_TOTAL_SCORE),
        "category_scores": [dict(c) for c in SIMPLIFIED_CATEGORY_SCORES],
        "strengths": list(SIMPLIFIED_STRENGTHS),
        "areas_for_improvement": list(SIMPLIFIED_IMPROVEMENTS),
        "final_assessment": SIMPLIFIED_ASSESSMENT,
        "document_gaps": [],
        "implementation_suggestions": [],
    }


class FeedbackGenerator:
    """Scores an examination transcript and stores the result as feedback"""

    def __init__(self, evaluator, session_store: SessionStore, feedback_store: FeedbackStore):
        self.evaluator = evaluator
        self.session_store = session_store
        self.feedback_store = feedback_store

    async def generate(
        self,
        transcript: List[Any],
        session_id: str,
        user_id: str,
        feedback_id: Optional[str] = None,
    ) -> FeedbackResult:
        turns = _as_turns(transcript)
        if len(turns) < MIN_TRANSCRIPT_TURNS:
            logger.warning(f"FeedbackGenerator: Transcript of session {session_id} too short ({len(turns)} turns)")
            return FeedbackResult(success=False, error="Not enough conversation data to generate feedback")

        session = await self.session_store.get(session_id)
        if session is None:
            logger.warning(f"FeedbackGenerator: Session {session_id} not found, scoring without project details")

        if not getattr(self.evaluator, "is_configured", False):
            logger.warning("FeedbackGenerator: Evaluator is not configured - using simplified feedback")
            content = simplified_feedback()
        else:
            try:
                evaluation = await self.evaluator.generate_structured(
                    build_feedback_prompt(turns, session),
                    DefenseEvaluation,
                    system=build_feedback_system_prompt((session or {}).get("level")),
                    temperature=FEEDBACK_TEMPERATURE,
                )
            except Exception as e:
                logger.error(f"FeedbackGenerator: Evaluation failed for session {session_id}: {e}", exc_info=True)
                return FeedbackResult(success=False, error=f"Evaluation failed: {e}")
            content = normalize_evaluation(evaluation)

        feedback = dict(content, session_id=session_id, user_id=user_id)
        stored = await self.feedback_store.create(feedback, feedback_id=feedback_id)
        if not stored.success:
            return FeedbackResult(success=False, error=stored.error)

        marked = await self.session_store.update_partial(
            session_id, {"has_feedback": True, "feedback_generated": utcnow()}
        )
        if not marked.success:
            logger.warning(f"FeedbackGenerator: Could not mark session {session_id} as having feedback: {marked.error}")

        logger.info(
            f"FeedbackGenerator: Stored feedback {stored.id} for session {session_id}: "
            f"total_score={feedback['total_score']}"
        )
        return FeedbackResult(success=True, feedback_id=stored.id, feedback=dict(feedback, id=stored.id))
