import asyncio

import pytest

from defense_service.components.examiner import Examiner
from defense_service.errors import EvaluatorNotConfiguredError
from defense_service.models import ExaminationRequest, Turn
from defense_service.prompt_builder import EXAMINER_SYSTEM_PROMPT


def test_unconfigured_examiner_raises(make_evaluator):
    examiner = Examiner(make_evaluator(configured=False))
    with pytest.raises(EvaluatorNotConfiguredError):
        asyncio.run(examiner.respond(ExaminationRequest(message="Hello")))


def test_examiner_builds_context_prompt(make_evaluator):
    evaluator = make_evaluator(text="Why did you pick MQTT over HTTP polling?")
    request = ExaminationRequest(
        session_id="s-1",
        project_title="Smart Farm",
        academic_level="Bachelor's",
        technologies="Python, MQTT",
        questions="- How is sensor data validated?",
        message="We push readings every minute.",
        previous_messages=[Turn(role="assistant", content="How often do sensors report?")],
    )

    answer = asyncio.run(Examiner(evaluator).respond(request))

    assert answer == "Why did you pick MQTT over HTTP polling?"
    call = evaluator.calls[0]
    assert call["system"] == EXAMINER_SYSTEM_PROMPT
    assert call["temperature"] == 0.7
    assert "- Project Title: Smart Farm" in call["prompt"]
    assert "assistant: How often do sensors report?" in call["prompt"]
    assert "We push readings every minute." in call["prompt"]
    # no explicit context: a sentence built from the project fields is used
    assert 'titled "Smart Farm"' in call["prompt"]
