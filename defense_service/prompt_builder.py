import json
from typing import Any, Dict, List, Optional

CATEGORY_NAMES = [
    "Technical Accuracy",
    "Documentation Alignment",
    "Response Structure",
    "Critical Thinking",
    "Time Management",
]

EXAMINER_SYSTEM_PROMPT = """
You are an academic project defense examiner conducting an oral examination.
Your task is to critically evaluate the student's understanding of their project.

Follow these guidelines:
1. Ask challenging follow-up questions based on the student's responses
2. Probe deeper when answers lack technical depth
3. Evaluate whether the student demonstrates mastery of the technologies mentioned
4. Maintain a professional but demanding examination tone
5. Focus on one topic at a time before moving to the next question
6. Identify inconsistencies or gaps in understanding
7. Acknowledge good answers before moving on

The examination questions have been provided, but you can add your own followup questions.
Do not generate feedback during the examination; that happens after the session ends.
""".strip()


def build_question_prompt(
    document_text: str,
    academic_level: str,
    project_title: str,
    tech_string: str,
    focus_ratio: str,
    question_count: int,
) -> str:
    """
    Prompt asking the evaluator for `question_count` defense questions, one per line.

    document_text is expected to be already truncated by the caller.
    """
    prompt = f"""
Generate {question_count} challenging and specific questions for a {academic_level} level defense of the project described below.

DOCUMENT CONTEXT:
{document_text}

Project Title: {project_title}
Technologies: {tech_string}
Focus: {focus_ratio}

Rules:
1. 40% questions must reference specific sections
2. 30% challenge methodology
3. 20% probe alternatives
4. 10% ethics/scalability

The questions should be specific to the content in the document, referencing actual technologies, methods, and concepts mentioned.
Each question should be challenging but fair for a {academic_level} level student.

FORMAT: Return only the list of {question_count} questions, one per line, without numbering or additional text.
"""
    return prompt.strip()


def format_transcript(transcript: List[Dict[str, str]]) -> str:
    """Transcript as "- role: content" lines, in turn order."""
    return "".join(f"- {turn['role']}: {turn['content']}\n" for turn in transcript)


def build_feedback_prompt(transcript: List[Dict[str, str]], session: Optional[Dict[str, Any]]) -> str:
    session = session or {}
    techstack = session.get("techstack") or []
    tech_string = ", ".join(techstack)
    level = session.get("level") or ""

    # JSON skeleton the model is steered towards
    expected_json_schema = {
        "total_score": 0,
        "category_scores": [{"name": name, "score": 0, "comment": ""} for name in CATEGORY_NAMES],
        "strengths": [],
        "areas_for_improvement": [],
        "final_assessment": "",
        "document_gaps": [],
        "implementation_suggestions": [],
    }

    prompt = f"""
ANALYZE PROJECT DEFENSE PERFORMANCE
===================================
As an academic defense evaluator, critically assess the student's defense performance using:

1. Project Information:
  - Title: {session.get("role") or "Academic Project"}
  - Academic Level: {level or "Graduate Level"}
  - Technologies Used: {tech_string or "Various technologies"}
  - Type: {session.get("type") or "Project Defense"}

2. Defense Transcript:
{format_transcript(transcript)}
Evaluation Criteria (0-100):
- **Technical Accuracy**: Understanding of {tech_string or "relevant technologies"}, implementation challenges
- **Documentation Alignment**: Consistency between defense answers and project documentation
- **Response Structure**: Clarity in explaining complex concepts
- **Critical Thinking**: Quality of responses to examiner challenges
- **Time Management**: Efficiency and focus in responses

Special Instructions:
- Identify any discrepancies or gaps in technical explanations
- Highlight 3-5 key strengths based on the defense transcript
- Identify 3-5 areas for improvement based on {level or "graduate"} standards
- Be strict on methodology validation and implementation details
- Assess critical thinking ability when challenged
- Provide specific actionable suggestions for improving weak areas
- Give concrete recommendations for enhancing implementation

Response format:
Return ONLY one JSON object, no Markdown, no ```json, no explanations.
Use exactly these keys and exactly these five categories in this order:

{json.dumps(expected_json_schema, indent=2)}
"""
    return prompt.strip()


def build_feedback_system_prompt(level: Optional[str]) -> str:
    return f"""
ROLE: Senior Academic Defense Evaluator
MANDATE: Maintain {level or "graduate-level"} academic defense standards
BEHAVIOR:
- Critically evaluate technical explanations
- Assess alignment with academic research methodology
- Apply {level or "graduate"} grading rubrics strictly
- Identify gaps in project implementation understanding
- Flag inconsistencies as areas for improvement
- Provide constructive feedback with specific improvement actions
OUTPUT: JSON scores with detailed justification
""".strip()


def build_examination_prompt(
    project_title: Optional[str],
    academic_level: Optional[str],
    technologies: Optional[str],
    questions: Optional[str],
    project_context: Optional[str],
    message: str,
    previous_messages: List[Dict[str, str]],
) -> str:
    conversation_history = "\n".join(f"{m['role']}: {m['content']}" for m in previous_messages)

    fallback_context = (
        f"This is a defense examination for a {academic_level or 'graduate'} level project "
        f"titled \"{project_title or 'Academic Project'}\". "
        f"The project involves {technologies or 'various technologies'}."
    )

    prompt = f"""
# PROJECT DEFENSE EXAMINATION CONTEXT

## Project Information:
- Project Title: {project_title or "Academic Project"}
- Academic Level: {academic_level or "Master's"}
- Technologies Used: {technologies or "Various technologies"}

## Examination Context:
{project_context or fallback_context}

## Questions to Cover:
{questions or "Ask questions about the project implementation, methodology, and technical decisions."}

## Previous Conversation:
{conversation_history}

## Current Student Message:
{message or ""}
"""
    return prompt.strip()
