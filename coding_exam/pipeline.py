"""
End-to-end exam run: answer, verify, (challenge), score, (enrich).
"""

import logging
import random
from dataclasses import dataclass, field
from typing import Callable, Mapping, Optional

from coding_exam.agent import BATCH_SIZE, solve_all_questions
from coding_exam.cache import KnowledgeCache
from coding_exam.enrich import enrich_incorrect_answers
from coding_exam.evaluate import ScoreReport, score
from coding_exam.llm import LanguageModel
from coding_exam.models import Question
from coding_exam.verify import EscalationChain, challenge_medium_confidence


logger = logging.getLogger(__name__)


@dataclass
class ExamRun:
    questions: list[Question]
    stats: dict[str, int] = field(default_factory=dict)
    report: Optional[ScoreReport] = None


async def run_pipeline(
    questions: list[Question],
    cache: KnowledgeCache,
    answer_model: LanguageModel,
    chain: EscalationChain,
    answer_key: Optional[Mapping[int, str]] = None,
    challenge_model: Optional[LanguageModel] = None,
    challenge_sample_rate: float = 0.0,
    enrich_model: Optional[LanguageModel] = None,
    batch_size: int = BATCH_SIZE,
    on_progress: Optional[Callable[[str], None]] = None,
    rng: Optional[random.Random] = None,
) -> ExamRun:
    """Run every stage in order over the same question list."""
    logger.info("Answering %d questions with %s", len(questions), answer_model.name)
    await solve_all_questions(questions, cache, answer_model, batch_size=batch_size, on_progress=on_progress)

    stats = await chain.verify_all(questions, cache)

    if challenge_model is not None and challenge_sample_rate > 0:
        stats["challenged_changed"] = await challenge_medium_confidence(
            questions, challenge_model, sample_rate=challenge_sample_rate, rng=rng
        )

    run = ExamRun(questions=questions, stats=stats)
    if answer_key is None:
        logger.info("No answer key provided; skipping scoring")
        return run

    run.report = score(questions, answer_key)
    if enrich_model is not None:
        stats["enriched"] = await enrich_incorrect_answers(questions, cache, enrich_model)
    return run
