"""
Post-exam enrichment: rewrite cached code explanations around the scenarios
the agent got wrong.
"""

import logging

from coding_exam.cache import KnowledgeCache
from coding_exam.classify import classify_question, detect_code_family, extract_codes, find_codes
from coding_exam.llm import LanguageModel
from coding_exam.models import CODE_FAMILIES, Question


logger = logging.getLogger(__name__)


def enrich_prompt(code: str, current_text: str, question: Question) -> list[dict]:
    record = question.final_record
    reasoning = record.reasoning if record else ""
    content = f"""You are a medical coding expert. Here is a code description and a real exam scenario where an AI got the question wrong.

--- CODE DESCRIPTION ---
{code} - {current_text or "(none)"}

--- QUESTION SCENARIO ---
Question: {question.text}
Options:
{question.options_text() or "(none)"}
AI's (incorrect) reasoning: {reasoning or "(none)"}

--- TASK ---
Update and improve the code description to help future coders avoid this mistake.
- Add clarifications, warnings, or use-case examples as needed.
- If this code is often confused with another, explain how to tell them apart.
- Make the explanation more robust and practical for real-world coding.

Return only the improved code description."""
    return [{"role": "user", "content": content}]


async def enrich_incorrect_answers(
    questions: list[Question],
    cache: KnowledgeCache,
    model: LanguageModel,
) -> int:
    """Improve the explanation of the correct option's code for each miss."""
    incorrect = [q for q in questions if q.is_correct is False and q.correct_answer]
    if not incorrect:
        logger.info("No incorrect answers; no enrichment needed")
        return 0

    updated = 0
    for question in incorrect:
        option_text = question.options.get(question.correct_answer)
        if not option_text:
            continue
        family = question.question_type or classify_question(question)
        codes = extract_codes([option_text], family) or find_codes(option_text)
        if not codes:
            continue
        code = codes[0]
        if family not in CODE_FAMILIES or detect_code_family(code) != family:
            family = detect_code_family(code)
        entry = cache.get(family, code) if family else None
        if entry is None:
            logger.debug("Question %s: %s not cached; skipping enrichment", question.id, code)
            continue

        try:
            improved = await model.invoke(enrich_prompt(code, entry.explanation or entry.description, question))
        except Exception as exc:
            logger.warning("Question %s: enrichment failed for %s: %s", question.id, code, exc)
            continue
        improved = improved.strip()
        if improved and cache.set_explanation(family, code, improved):
            updated += 1
            logger.info("Updated explanation for %s code %s", family, code)

    logger.info("Enrichment complete: %d code explanations updated", updated)
    return updated
