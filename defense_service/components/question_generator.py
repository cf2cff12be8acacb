import logging
from typing import List, Optional

from ..parser import parse_question_lines
from ..prompt_builder import build_question_prompt

logger = logging.getLogger(__name__)

MAX_DOCUMENT_CHARS = 7000
TRUNCATION_SUFFIX = "... [truncated for length]"
DEFAULT_FOCUS_RATIO = "40% technical, 30% methodology, 20% alternatives, 10% ethics"
DEFAULT_QUESTION_COUNT = 10
MAX_QUESTION_COUNT = 10  # size of the generic list used for padding
DEFAULT_ACADEMIC_LEVEL = "Master's"
MIN_VALID_QUESTIONS = 5
QUESTION_TEMPERATURE = 0.3


def get_fallback_questions(academic_level: str, project_title: str, technologies: str) -> List[str]:
    """Ten generic defense questions. Pure: never fails, never calls out."""
    return [
        f"Explain the overall architecture of your {project_title} project.",
        f"What were the main technical challenges you faced while working with {technologies}?",
        "How did you ensure the quality and reliability of your implementation?",
        "Describe your methodology and research approach in detail.",
        "How does your project compare to existing solutions in this domain?",
        "What are the limitations of your current implementation?",
        "How would you scale your solution for larger datasets or user bases?",
        "What ethical considerations did you address in your project?",
        "If you had more time and resources, what would you improve in your project?",
        f"How did you balance theoretical concepts and practical implementation in your {academic_level}-level project?",
    ]


def truncate_document(text: str, max_chars: int = MAX_DOCUMENT_CHARS) -> str:
    if len(text) > max_chars:
        return text[:max_chars] + TRUNCATION_SUFFIX
    return text


class QuestionGenerator:
    """Turns extracted document text into a list of defense questions."""

    def __init__(self, evaluator):
        self.evaluator = evaluator

    async def generate(
        self,
        document_text: str = "",
        academic_level: Optional[str] = None,
        project_title: Optional[str] = None,
        technologies: Optional[List[str]] = None,
        focus_ratio: Optional[str] = None,
        question_count: int = DEFAULT_QUESTION_COUNT,
    ) -> List[str]:
        academic_level = academic_level or DEFAULT_ACADEMIC_LEVEL
        project_title = project_title or "Project Defense"
        technologies = technologies or []
        focus_ratio = focus_ratio or DEFAULT_FOCUS_RATIO
        question_count = max(1, min(question_count, MAX_QUESTION_COUNT))
        tech_string = ", ".join(technologies) if technologies else "Not specified"

        if not getattr(self.evaluator, "is_configured", False):
            logger.warning("QuestionGenerator: Evaluator is not configured - using fallback questions")
            return get_fallback_questions(academic_level, project_title, tech_string)

        prompt = build_question_prompt(
            document_text=truncate_document(document_text or ""),
            academic_level=academic_level,
            project_title=project_title,
            tech_string=tech_string,
            focus_ratio=focus_ratio,
            question_count=question_count,
        )

        try:
            raw = await self.evaluator.generate_text(prompt, temperature=QUESTION_TEMPERATURE)
        except Exception as e:
            logger.error(f"QuestionGenerator: Evaluator error, using fallback questions: {e}", exc_info=True)
            return get_fallback_questions(academic_level, project_title, tech_string)

        questions = parse_question_lines(raw)
        if len(questions) < MIN_VALID_QUESTIONS:
            logger.warning(
                f"QuestionGenerator: Only {len(questions)} valid questions generated, using fallback questions"
            )
            return get_fallback_questions(academic_level, project_title, tech_string)

        if len(questions) < question_count:
            # Top up from the generic list so callers always get question_count items
            logger.info(
                f"QuestionGenerator: Requested {question_count} questions, got {len(questions)}; "
                f"padding with generic questions"
            )
            for q in get_fallback_questions(academic_level, project_title, tech_string):
                if len(questions) >= question_count:
                    break
                if q not in questions:
                    questions.append(q)

        logger.info(f"QuestionGenerator: Generated {min(len(questions), question_count)} questions for '{project_title}'")
        return questions[:question_count]
