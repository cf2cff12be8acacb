import logging

from ..errors import EvaluatorNotConfiguredError
from ..models import ExaminationRequest
from ..prompt_builder import EXAMINER_SYSTEM_PROMPT, build_examination_prompt

logger = logging.getLogger(__name__)

EXAMINER_TEMPERATURE = 0.7


class Examiner:
    """Produces the examiner's next turn during the examination call"""

    def __init__(self, evaluator):
        self.evaluator = evaluator

    async def respond(self, request: ExaminationRequest) -> str:
        if not getattr(self.evaluator, "is_configured", False):
            raise EvaluatorNotConfiguredError("Evaluator API key is not configured")

        logger.info(
            f"Examiner: Turn for session {request.session_id} "
            f"(message length={len(request.message)}, previous={len(request.previous_messages)})"
        )

        prompt = build_examination_prompt(
            project_title=request.project_title,
            academic_level=request.academic_level,
            technologies=request.technologies,
            questions=request.questions,
            project_context=request.project_context,
            message=request.message,
            previous_messages=[{"role": m.role, "content": m.content} for m in request.previous_messages],
        )
        return await self.evaluator.generate_text(
            prompt,
            system=EXAMINER_SYSTEM_PROMPT,
            temperature=EXAMINER_TEMPERATURE,
        )
