"""
Medical Coding Answer Agent

Answers medical coding exam questions by:
1. Classifying the question into a code family
2. Resolving the option codes through the knowledge cache
3. Asking the answer model for a choice with a conservative confidence score
"""

import logging
import os
import re
from typing import Callable, Optional

from coding_exam.cache import KnowledgeCache, is_placeholder
from coding_exam.classify import classify_question, dedupe_preserve_order, extract_codes
from coding_exam.llm import LanguageModel
from coding_exam.models import Answer, Question


logger = logging.getLogger(__name__)

# Configuration
BATCH_SIZE = int(os.getenv("ANSWER_BATCH_SIZE", "8"))
DESCRIPTION_MATCH_ENABLED = os.getenv("DESCRIPTION_MATCH_ENABLED", "true").lower() in {"1", "true", "yes", "on"}
DESCRIPTION_MATCH_MIN_SCORE = float(os.getenv("DESCRIPTION_MATCH_MIN_SCORE", "0.7"))
DESCRIPTION_MATCH_CONFIDENCE = 8
DESCRIPTION_MATCH_MODEL = "description-match"
FALLBACK_OPTION = "A"
FALLBACK_CONFIDENCE = 5

SYSTEM_PROMPT = "You are a medical coding expert. Be conservative with confidence ratings."

CONFIDENCE_GUIDE = """IMPORTANT: Be honest about uncertainty. Medical coding has many nuances and edge cases.
- Rate 10 only if you're absolutely certain based on clear guidelines
- Rate 7-9 for solid answers with good reasoning
- Rate 4-6 if you're unsure between options
- Rate 1-3 if you're guessing"""

RESPONSE_FORMAT = """Respond in this exact format:
Answer: [A/B/C/D]
Confidence: [1-10]
Reasoning: [brief explanation of your choice]"""

# Labels must open a line (optionally after markdown emphasis) and are case-sensitive
_ANSWER_RE = re.compile(r"^[ \t*_]*Answer:[ \t*_]*\[?([A-D])\b", re.MULTILINE)
_CONFIDENCE_RE = re.compile(r"^[ \t*_]*Confidence:[ \t*_]*\[?(\d+)", re.MULTILINE)
_REASONING_RE = re.compile(r"^[ \t*_]*Reasoning:[ \t*_]*(.*?)(?=\n\s*\n|\Z)", re.MULTILINE | re.DOTALL)

_KEYWORD_STOPWORDS = {
    "what", "which", "when", "where", "this", "that", "with", "from", "have",
    "code", "represents",
}


def _clamp_confidence(value: object) -> int:
    """Clamp confidence to 1-10."""
    try:
        score = int(value)
    except (TypeError, ValueError):
        return FALLBACK_CONFIDENCE
    return max(1, min(10, score))


def _truncate(text: str, max_len: int) -> str:
    """Truncate text with ellipsis."""
    if len(text) <= max_len:
        return text
    return text[: max_len - 3].rstrip() + "..."


def parse_answer_response(text: str) -> Optional[tuple[str, int, str]]:
    """Parse `Answer:` / `Confidence:` / `Reasoning:` labels.

    Returns None unless both the answer and the confidence labels are present.
    """
    if not text:
        return None
    answer_match = _ANSWER_RE.search(text)
    confidence_match = _CONFIDENCE_RE.search(text)
    if not answer_match or not confidence_match:
        return None
    reasoning_match = _REASONING_RE.search(text)
    reasoning = reasoning_match.group(1).strip() if reasoning_match else ""
    return (
        answer_match.group(1),
        _clamp_confidence(confidence_match.group(1)),
        reasoning,
    )


def fallback_answer(reasoning: str, source: str, model: str = "unknown") -> Answer:
    """Conservative default used when a response cannot be used."""
    return Answer(
        selected_option=FALLBACK_OPTION,
        confidence=FALLBACK_CONFIDENCE,
        reasoning=reasoning,
        model=model,
        source=source,
    )


def build_answer_messages(question: Question, code_descriptions: dict[str, str]) -> list[dict]:
    """Build the chat request for one question."""
    lines = [
        "You are a certified medical coding expert. Answer this question"
        + (" using the provided code descriptions" if code_descriptions else "")
        + " and rate your confidence CONSERVATIVELY.",
        "",
        CONFIDENCE_GUIDE,
        "",
        f"Question {question.id}: {question.text}",
        question.options_text(),
    ]
    if code_descriptions:
        lines.extend([
            "",
            "Code descriptions and explanations from the official databases (follow these):",
            "\n".join(f"{code}: {desc}" for code, desc in code_descriptions.items()),
        ])
    lines.extend(["", RESPONSE_FORMAT])
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": "\n".join(lines)},
    ]


async def answer_question(
    question: Question,
    model: LanguageModel,
    code_descriptions: Optional[dict[str, str]] = None,
) -> Answer:
    """Ask the model for an answer. Never raises; failures become fallback answers."""
    messages = build_answer_messages(question, code_descriptions or {})
    try:
        content = await model.invoke(messages)
    except Exception as exc:
        logger.warning("Q%s: %s call failed: %s", question.id, model.name, exc)
        return fallback_answer(f"Error occurred during processing: {exc}", "error_fallback", model.name)

    parsed = parse_answer_response(content)
    if parsed is None:
        logger.warning("Q%s: unexpected response format from %s", question.id, model.name)
        return fallback_answer("Could not parse model response", "parse_fallback", model.name)

    selected_option, confidence, reasoning = parsed
    return Answer(
        selected_option=selected_option,
        confidence=confidence,
        reasoning=reasoning,
        model=model.name,
        source="llm",
    )


def extract_keywords(text: str) -> list[str]:
    """Key terms of a question: words over 3 characters minus filler words."""
    words = re.sub(r"[^\w\s]", "", text.lower()).split()
    return [word for word in words if len(word) > 3 and word not in _KEYWORD_STOPWORDS]


def match_score(description: str, keywords: list[str]) -> float:
    """Fraction of keywords present in a description."""
    if not keywords:
        return 0.0
    lowered = description.lower()
    return sum(1 for keyword in keywords if keyword in lowered) / len(keywords)


def _description_match(
    question: Question,
    family: str,
    code_descriptions: dict[str, str],
) -> Optional[Answer]:
    """Pick the first option whose code description covers the question's key terms."""
    keywords = extract_keywords(question.text)
    for option_key, option_text in sorted(question.options.items()):
        codes = extract_codes([option_text], family)
        if not codes:
            continue
        code = codes[0]
        description = code_descriptions.get(code)
        if not description or is_placeholder(description):
            continue
        score = match_score(description, keywords)
        if score > DESCRIPTION_MATCH_MIN_SCORE:
            return Answer(
                selected_option=option_key,
                confidence=DESCRIPTION_MATCH_CONFIDENCE,
                reasoning=(
                    f"{family} code {code} description \"{_truncate(description, 200)}\" "
                    f"matches the question context (score {score:.2f})."
                ),
                model=DESCRIPTION_MATCH_MODEL,
                source="description_match",
            )
    return None


async def solve_question(
    question: Question,
    cache: KnowledgeCache,
    model: LanguageModel,
    on_status: Optional[Callable[[str], None]] = None,
) -> Answer:
    """Classify, ground and answer a single question."""

    def status(msg: str) -> None:
        if on_status:
            on_status(f"Q{question.id}: {msg}")

    family = classify_question(question)
    logger.info("Question %s identified as %s question", question.id, family)

    codes = dedupe_preserve_order(extract_codes(question.options, family))
    code_descriptions: dict[str, str] = {}
    if codes:
        status(f"resolving {len(codes)} {family} codes...")
        code_descriptions = await cache.resolve_many(family, codes)
    elif family != "GENERAL":
        logger.info("No %s codes found in options for question %s", family, question.id)

    if family == "HCPCS" and DESCRIPTION_MATCH_ENABLED and code_descriptions:
        matched = _description_match(question, family, code_descriptions)
        if matched:
            status("answered (description match)")
            return matched

    status(f"asking {model.name}...")
    answer = await answer_question(question, model, code_descriptions)
    status("answered")
    return answer


def _log_confidence_stats(questions: list[Question]) -> None:
    confidences = [q.my_answer.confidence if q.my_answer else 0 for q in questions]
    if not confidences:
        return
    low = sum(1 for c in confidences if c < 6)
    medium = sum(1 for c in confidences if 6 <= c <= 7)
    high = sum(1 for c in confidences if c >= 9)
    average = sum(confidences) / len(confidences)
    logger.info(
        "Confidence stats: %d low (<6), %d medium (6-7), %d high (9+), avg: %.1f",
        low, medium, high, average,
    )


async def solve_all_questions(
    questions: list[Question],
    cache: KnowledgeCache,
    model: LanguageModel,
    batch_size: int = BATCH_SIZE,
    on_progress: Optional[Callable[[str], None]] = None,
) -> list[Question]:
    """Answer every question in fixed-size batches, in submission order.

    A failure on one question records the fallback answer and moves on.
    """
    batch_size = max(1, batch_size)
    completed = 0
    total = len(questions)

    def update_progress(msg: str = "") -> None:
        if on_progress:
            on_progress(f"[{completed}/{total}] {msg}")

    for start in range(0, total, batch_size):
        batch = questions[start:start + batch_size]
        logger.info(
            "Answering batch %d/%d (Questions %s-%s)",
            start // batch_size + 1,
            (total + batch_size - 1) // batch_size,
            batch[0].id,
            batch[-1].id,
        )
        for question in batch:
            try:
                question.my_answer = await solve_question(question, cache, model, on_status=update_progress)
            except Exception as exc:
                logger.exception("Error processing question %s", question.id)
                question.my_answer = fallback_answer(
                    f"Error occurred during processing: {exc}", "error_fallback"
                )
            completed += 1
            update_progress(f"Q{question.id} done")

    _log_confidence_stats(questions)
    return questions
