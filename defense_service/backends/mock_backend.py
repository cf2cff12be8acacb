import json
import logging
from typing import Optional, Type, TypeVar

from pydantic import BaseModel

from ..parser import parse_llm_response

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

MOCK_QUESTIONS = [
    "Which section of your document describes the core algorithm, and why was it chosen?",
    "How did you validate the results reported in your evaluation chapter?",
    "Why did you choose this architecture over a simpler monolithic design?",
    "What assumptions does your methodology make about the input data?",
    "How would an alternative technology stack change your implementation effort?",
    "Which experiment would you repeat differently with more time?",
    "How does your solution behave when the number of users grows tenfold?",
    "What alternative approaches did you consider and reject?",
    "How did you measure the quality of your implementation?",
    "What ethical risks does your project introduce, and how are they mitigated?",
]


class MockBackend:
    """
    Offline backend for debugging: returns deterministic answers.
    """
    backend_name = "mock"

    def __init__(self, model_name: str = "mock"):
        self.model_name = model_name
        logger.info("MockBackend initialized")

    @property
    def is_configured(self) -> bool:
        return True

    async def generate_text(self, prompt: str, system: Optional[str] = None, temperature: float = 0.3) -> str:
        _ = (prompt, system, temperature)
        return "\n".join(MOCK_QUESTIONS)

    async def generate_structured(
        self,
        prompt: str,
        schema: Type[T],
        system: Optional[str] = None,
        temperature: float = 0.2,
    ) -> T:
        _ = (prompt, system, temperature)
        # Goes through the same parser as a real model answer
        raw = json.dumps(
            {
                "total_score": 78,
                "category_scores": [
                    {"name": "Technical Accuracy", "score": 80, "comment": "Solid grasp of the main technologies."},
                    {"name": "Documentation Alignment", "score": 75, "comment": "Answers mostly matched the document."},
                    {"name": "Response Structure", "score": 78, "comment": "Clear but sometimes long answers."},
                    {"name": "Critical Thinking", "score": 76, "comment": "Handled challenges reasonably well."},
                    {"name": "Time Management", "score": 81, "comment": "Kept answers focused."},
                ],
                "strengths": ["Explained the architecture clearly."],
                "areas_for_improvement": ["Support claims with measurements."],
                "final_assessment": "A competent defense with room for deeper evaluation.",
                "document_gaps": [],
                "implementation_suggestions": [],
            }
        )
        return schema.model_validate(parse_llm_response(raw))
