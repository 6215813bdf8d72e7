"""
Exam Ingestion

Loads multiple-choice questions from a questions JSON file or from the plain
text layout of an exam (`1. question` / `A. option` lines), and official
answer explanations from JSON.
"""

import json
import logging
import re
from pathlib import Path

from pydantic import TypeAdapter

from coding_exam.models import AnswerExplanation, Question


logger = logging.getLogger(__name__)

_QUESTION_LINE_RE = re.compile(r"^(\d+)\.\s+(.*)")
_OPTION_LINE_RE = re.compile(r"^([A-D])\.\s+(.*)")

# Common headers/footers in exported exam text
NOISE = ("Medical Coding Ace", "TIMER START", "4 HOURS")

_explanations_adapter = TypeAdapter(list[AnswerExplanation])


def _parse_options(raw: object) -> dict[str, str]:
    if isinstance(raw, dict):
        return {str(k).strip().upper(): str(v).strip() for k, v in raw.items()}
    options = {}
    for item in raw or []:
        match = _OPTION_LINE_RE.match(str(item).strip())
        if match:
            options[match.group(1)] = match.group(2).strip()
        else:
            logger.warning("Skipping option without a letter prefix: %r", item)
    return options


def parse_questions_json(data: list[dict]) -> list[Question]:
    """Build questions from `[{number|id, text, options}]` records."""
    questions = []
    for item in data:
        number = item.get("number", item.get("id"))
        if number is None:
            raise ValueError(f"Question record without a number: {item!r}")
        questions.append(Question(
            id=int(number),
            text=str(item.get("text", "")).strip(),
            options=_parse_options(item.get("options")),
        ))
    return questions


def parse_questions_text(text: str) -> list[Question]:
    """Parse exam text into Question objects."""
    for noise in NOISE:
        text = text.replace(noise, "")

    questions = []
    current_id = None
    current_text: list[str] = []
    current_options: dict[str, str] = {}

    def flush() -> None:
        if current_id is not None:
            questions.append(Question(
                id=current_id,
                text=" ".join(current_text).strip(),
                options=current_options,
            ))

    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue

        q_match = _QUESTION_LINE_RE.match(line)
        opt_match = _OPTION_LINE_RE.match(line)

        if q_match:
            flush()
            current_id = int(q_match.group(1))
            current_text = [q_match.group(2)]
            current_options = {}
        elif opt_match and current_id is not None:
            current_options[opt_match.group(1)] = opt_match.group(2)
        elif current_id is not None:
            # Continuation of the last option, or of the question stem
            if current_options:
                last_key = max(current_options)
                current_options[last_key] += " " + line
            else:
                current_text.append(line)

    flush()
    return questions


def load_questions(path: Path | str) -> list[Question]:
    """Load questions from a .json file or a plain text exam."""
    path = Path(path)
    content = path.read_text(encoding="utf-8")
    if path.suffix.lower() == ".json":
        questions = parse_questions_json(json.loads(content))
    else:
        questions = parse_questions_text(content)
    logger.info("Loaded %d questions from %s", len(questions), path)
    return questions


def load_explanations(path: Path | str) -> list[AnswerExplanation]:
    """Load `[{number, correctAnswer, explanation}]` records."""
    path = Path(path)
    return _explanations_adapter.validate_json(path.read_text(encoding="utf-8"))


def save_questions(questions: list[Question], path: Path | str) -> None:
    """Write questions with their answers and verification state."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = [q.model_dump(mode="json") for q in questions]
    path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    logger.info("Saved %d questions to %s", len(questions), path)
