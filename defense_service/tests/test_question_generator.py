import asyncio

from defense_service.components.question_generator import (
    MAX_DOCUMENT_CHARS,
    MAX_QUESTION_COUNT,
    TRUNCATION_SUFFIX,
    QuestionGenerator,
    get_fallback_questions,
    truncate_document,
)


def _questions(n):
    return [f"Why did you choose approach number {i}?" for i in range(1, n + 1)]


def test_fallback_questions_mention_project():
    questions = get_fallback_questions("Bachelor's", "Smart Farm", "Python, MQTT")

    assert len(questions) == 10
    assert questions[0] == "Explain the overall architecture of your Smart Farm project."
    assert "Python, MQTT" in questions[1]
    assert "Bachelor's-level" in questions[-1]


def test_unconfigured_evaluator_uses_fallback(make_evaluator):
    evaluator = make_evaluator(configured=False)
    questions = asyncio.run(QuestionGenerator(evaluator).generate("some document", project_title="Smart Farm"))

    assert questions == get_fallback_questions("Master's", "Smart Farm", "Not specified")
    assert evaluator.calls == []


def test_evaluator_error_uses_fallback(make_evaluator):
    evaluator = make_evaluator(error=RuntimeError("OpenRouter failed after 2 attempts"))
    questions = asyncio.run(QuestionGenerator(evaluator).generate("some document"))

    assert questions == get_fallback_questions("Master's", "Project Defense", "Not specified")


def test_too_few_valid_questions_uses_fallback(make_evaluator):
    answer = "\n".join(_questions(4) + ["Here are your questions:", "1. Not a question"])
    questions = asyncio.run(QuestionGenerator(make_evaluator(text=answer)).generate("doc"))

    assert questions == get_fallback_questions("Master's", "Project Defense", "Not specified")


def test_keeps_only_question_lines(make_evaluator):
    answer = "Sure! Here they are:\n\n" + "\n".join(f"  {q}  " for q in _questions(10)) + "\nGood luck."
    questions = asyncio.run(QuestionGenerator(make_evaluator(text=answer)).generate("doc"))

    assert questions == _questions(10)


def test_short_answer_is_padded_to_requested_count(make_evaluator):
    answer = "\n".join(_questions(7))
    questions = asyncio.run(
        QuestionGenerator(make_evaluator(text=answer)).generate("doc", project_title="Smart Farm", question_count=10)
    )

    assert len(questions) == 10
    assert questions[:7] == _questions(7)
    assert questions[7] == "Explain the overall architecture of your Smart Farm project."


def test_long_answer_is_cut_to_requested_count(make_evaluator):
    answer = "\n".join(_questions(12))
    questions = asyncio.run(QuestionGenerator(make_evaluator(text=answer)).generate("doc", question_count=6))

    assert questions == _questions(6)


def test_requested_count_is_capped_at_ten(make_evaluator):
    evaluator = make_evaluator(text="\n".join(_questions(6)))
    questions = asyncio.run(QuestionGenerator(evaluator).generate("doc", question_count=50))

    assert len(questions) == MAX_QUESTION_COUNT == 10
    assert questions[:6] == _questions(6)
    assert "Generate 10 challenging" in evaluator.calls[0]["prompt"]


def test_long_document_is_truncated_in_prompt(make_evaluator):
    evaluator = make_evaluator(text="\n".join(_questions(10)))
    document = "x" * (MAX_DOCUMENT_CHARS + 500)
    asyncio.run(QuestionGenerator(evaluator).generate(document, technologies=["Python", "MQTT"]))

    prompt = evaluator.calls[0]["prompt"]
    assert TRUNCATION_SUFFIX in prompt
    assert "x" * (MAX_DOCUMENT_CHARS + 1) not in prompt
    assert "Technologies: Python, MQTT" in prompt
    assert evaluator.calls[0]["temperature"] == 0.3


def test_truncate_document():
    assert truncate_document("short") == "short"
    assert truncate_document("abcdef", max_chars=3) == "abc" + TRUNCATION_SUFFIX
