import json
import logging
import re
from typing import Any, Dict, List

logger = logging.getLogger(__name__)


def _strip_code_fences(text: str) -> str:
    """
    Removes ```json ... ``` and ``` ... ``` when the model wrapped its answer in Markdown.
    """
    t = text.strip()

    m = re.search(r"```(?:json)?\s*(\{.*\})\s*```", t, flags=re.DOTALL | re.IGNORECASE)
    if m:
        return m.group(1).strip()

    return t


def _extract_json_object(text: str) -> str:
    """
    Cuts the outermost {...} out of free text, e.g.
      "Here is the evaluation:\n{...json...}"
      "{...json...}\nThanks!"
    """
    s = text.strip()

    first = s.find("{")
    last = s.rfind("}")
    if first == -1 or last == -1 or last <= first:
        raise ValueError("No JSON object boundaries found")

    return s[first : last + 1].strip()


def parse_llm_response(raw: str) -> Dict[str, Any]:
    """
    Parses an LLM answer into a dict.

    Supported formats:
    - plain JSON
    - JSON inside ```json ... ```
    - JSON with a prefix/suffix ("Here is the evaluation:")

    Raises ValueError when no JSON object can be recovered; the caller
    decides whether that is fatal.
    """
    if raw is None:
        raise ValueError("LLM response is empty")

    raw_text = str(raw)
    cleaned = _strip_code_fences(raw_text)

    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError:
        try:
            data = json.loads(_extract_json_object(cleaned))
        except (ValueError, json.JSONDecodeError) as e:
            logger.warning("LLM returned invalid JSON: %s\nResponse: %s", e, raw_text[:500])
            raise ValueError(f"LLM returned invalid JSON: {e}") from e

    if not isinstance(data, dict):
        raise ValueError("JSON root is not an object")

    return data


def parse_question_lines(text: str) -> List[str]:
    """Keeps only the non-empty lines of a model answer that end with a question mark."""
    questions = []
    for line in str(text or "").split("\n"):
        line = line.strip()
        if line and line.endswith("?"):
            questions.append(line)
    return questions
