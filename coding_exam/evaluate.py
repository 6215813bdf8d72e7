"""
Score exam answers against the answer key and keep a performance history.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Mapping, Optional

from coding_exam.models import (
    GroupStats,
    PerformanceLog,
    PerformanceSummary,
    Question,
    QuestionLogEntry,
    TestResult,
)


logger = logging.getLogger(__name__)

UNKNOWN_MODEL = "unknown"


def percentage(correct: int, total: int) -> int:
    """Integer percentage rounded half-up; 0 when there is nothing to score."""
    if total <= 0:
        return 0
    return (200 * correct + total) // (2 * total)


# =============================================================================
# Answer key
# =============================================================================

def _load_answers_list(csv_path: Path) -> list[str]:
    """Load answers from a one-row comma-separated CSV."""
    content = csv_path.read_text(encoding="utf-8").strip().rstrip(".")
    if not content:
        return []
    return [a.strip().upper() for a in content.split(",")]


def load_answer_key(path: Path | str) -> dict[int, str]:
    """Read an answer key.

    Accepts a JSON list of `{"number", "answer"}` objects, a JSON mapping of
    question number to letter, or a one-row CSV of letters in question order.
    """
    path = Path(path)
    if path.suffix.lower() != ".json":
        answers = _load_answers_list(path)
        return {i + 1: ans for i, ans in enumerate(answers) if ans}

    data = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(data, dict):
        items = data.items()
    elif isinstance(data, list):
        items = [(item["number"], item["answer"]) for item in data]
    else:
        raise ValueError(f"Unsupported answer key format in {path}")
    return {int(number): str(answer).strip().upper() for number, answer in items if answer}


# =============================================================================
# Scoring
# =============================================================================

def compare_answers(submissions: Mapping[int, str], answer_key: Mapping[int, str]) -> list[TestResult]:
    """Mark every keyed question correct or incorrect, in question order."""
    results = []
    for number in sorted(answer_key):
        expected = answer_key[number]
        actual = submissions.get(number)
        results.append(TestResult(
            number=number,
            my_answer=actual,
            correct_answer=expected,
            is_correct=actual is not None and actual == expected,
        ))
    return results


def _bump(groups: dict[str, GroupStats], key: str, is_correct: bool) -> None:
    stats = groups.setdefault(key, GroupStats())
    stats.total += 1
    if is_correct:
        stats.correct += 1


def generate_performance_log(
    questions: list[Question],
    results: list[TestResult],
    timestamp: Optional[str] = None,
) -> PerformanceLog:
    """Build the per-question log and the family/model breakdowns."""
    by_id = {q.id: q for q in questions}
    log = PerformanceLog(timestamp=timestamp or datetime.now().isoformat())
    summary = log.summary

    for result in results:
        question = by_id.get(result.number)
        question_type = (question.question_type if question else None) or "GENERAL"
        record = question.final_record if question and result.my_answer is not None else None
        model_used = record.model if record else UNKNOWN_MODEL

        log.questions[str(result.number)] = QuestionLogEntry(
            question_type=question_type,
            model_used=model_used,
            is_correct=result.is_correct,
            confidence=question.final_confidence if question else 0,
            initial_answer=question.my_answer.selected_option if question and question.my_answer else None,
            verified_answer=(
                question.verified_answer.selected_option
                if question and question.verified_answer else None
            ),
            correct_answer=result.correct_answer,
        )

        summary.total_questions += 1
        if result.is_correct:
            summary.correct_answers += 1
        if question and question.verified_answer:
            summary.verified_count += 1
        _bump(summary.by_question_type, question_type, result.is_correct)
        _bump(summary.by_model, model_used, result.is_correct)

    summary.incorrect_answers = summary.total_questions - summary.correct_answers
    summary.percentage = percentage(summary.correct_answers, summary.total_questions)
    for stats in list(summary.by_question_type.values()) + list(summary.by_model.values()):
        stats.percentage = percentage(stats.correct, stats.total)
    return log


@dataclass
class ScoreReport:
    results: list[TestResult]
    log: PerformanceLog

    @property
    def summary(self) -> PerformanceSummary:
        return self.log.summary


def score(questions: list[Question], answer_key: Mapping[int, str]) -> ScoreReport:
    """Score final answers and record the outcome on each question."""
    submissions = {q.id: q.final_answer for q in questions if q.final_answer}
    results = compare_answers(submissions, answer_key)

    by_id = {q.id: q for q in questions}
    for result in results:
        question = by_id.get(result.number)
        if question is not None:
            question.correct_answer = result.correct_answer
            question.is_correct = result.is_correct

    log = generate_performance_log(questions, results)
    summary = log.summary
    logger.info(
        "Scored %d/%d correct (%d%%)",
        summary.correct_answers,
        summary.total_questions,
        summary.percentage,
    )
    return ScoreReport(results=results, log=log)


# =============================================================================
# Persistence
# =============================================================================

def save_performance_log(log: PerformanceLog, path: Path | str, history_path: Optional[Path | str] = None) -> None:
    """Write the current log and append it to the history file."""
    payload = log.model_dump(mode="json")
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    logger.info("Performance log saved to %s", path)

    if history_path is None:
        return
    history_path = Path(history_path)
    history: list = []
    if history_path.exists():
        try:
            history = json.loads(history_path.read_text(encoding="utf-8"))
        except ValueError as exc:
            raise ValueError(f"Invalid performance history {history_path}: {exc}") from exc
        if not isinstance(history, list):
            raise ValueError(f"Performance history {history_path} is not a list")
    history.append(payload)
    history_path.parent.mkdir(parents=True, exist_ok=True)
    history_path.write_text(json.dumps(history, indent=2), encoding="utf-8")
    logger.info("Performance history updated (%d runs) at %s", len(history), history_path)
