import json

import pytest

from conftest import make_question
from coding_exam.evaluate import (
    compare_answers,
    load_answer_key,
    percentage,
    save_performance_log,
    score,
)
from coding_exam.models import VerifiedAnswer


def test_compare_answers_missing_submission_is_incorrect():
    results = compare_answers({1: "B", 2: "A"}, {1: "B", 2: "C", 3: "D"})

    assert [(r.number, r.is_correct) for r in results] == [(1, True), (2, False), (3, False)]
    assert results[2].my_answer is None
    assert percentage(sum(r.is_correct for r in results), len(results)) == 33


def test_percentage_rounds_half_up():
    assert percentage(1, 2) == 50
    assert percentage(1, 8) == 13
    assert percentage(2, 3) == 67
    assert percentage(0, 0) == 0


def test_score_breakdowns_and_question_updates():
    q1 = make_question(qid=1, confidence=9, answer="B", model="o3-mini")
    q1.question_type = "CPT"
    q2 = make_question(qid=2, confidence=3, answer="A", model="o3-mini")
    q2.question_type = "ICD-10"
    q2.verified_answer = VerifiedAnswer(selected_option="C", confidence=8, model="sonar-pro", strategy="search")

    report = score([q1, q2], {1: "B", 2: "C", 3: "D"})
    summary = report.summary

    assert (summary.total_questions, summary.correct_answers, summary.incorrect_answers) == (3, 2, 1)
    assert summary.percentage == 67
    assert summary.verified_count == 1
    assert summary.by_question_type["CPT"].correct == 1
    assert summary.by_question_type["ICD-10"].percentage == 100
    assert summary.by_question_type["GENERAL"].total == 1
    assert summary.by_question_type["HCPCS"].total == 0
    assert summary.by_model["sonar-pro"].correct == 1
    assert summary.by_model["unknown"].total == 1
    assert q2.is_correct is True and q2.correct_answer == "C"
    assert report.log.questions["2"].initial_answer == "A"
    assert report.log.questions["2"].verified_answer == "C"


def test_load_answer_key_formats(tmp_path):
    csv_path = tmp_path / "answers.csv"
    csv_path.write_text("b, C ,a,d.")
    assert load_answer_key(csv_path) == {1: "B", 2: "C", 3: "A", 4: "D"}

    list_path = tmp_path / "answer_key.json"
    list_path.write_text(json.dumps([{"number": 1, "answer": "b"}, {"number": 2, "answer": "D"}]))
    assert load_answer_key(list_path) == {1: "B", 2: "D"}

    map_path = tmp_path / "key.json"
    map_path.write_text(json.dumps({"1": "a", "2": "c"}))
    assert load_answer_key(map_path) == {1: "A", 2: "C"}


def test_history_is_append_only(tmp_path):
    q = make_question(qid=1, confidence=9, answer="B")
    log_path = tmp_path / "performance_log.json"
    history_path = tmp_path / "performance_history.json"

    first = score([q], {1: "B"}).log
    save_performance_log(first, log_path, history_path)
    second = score([q], {1: "C"}).log
    save_performance_log(second, log_path, history_path)

    history = json.loads(history_path.read_text())
    assert [run["summary"]["percentage"] for run in history] == [100, 0]
    assert json.loads(log_path.read_text())["summary"]["percentage"] == 0


def test_corrupt_history_is_not_overwritten(tmp_path):
    history_path = tmp_path / "performance_history.json"
    history_path.write_text("{not json")
    log = score([make_question(qid=1, confidence=9)], {1: "B"}).log

    with pytest.raises(ValueError):
        save_performance_log(log, tmp_path / "log.json", history_path)
    assert history_path.read_text() == "{not json"


def test_missing_submission_keeps_classified_family():
    unanswered = make_question(qid=1)
    unanswered.question_type = "CPT"

    summary = score([unanswered], {1: "A", 2: "B"}).summary

    assert summary.by_question_type["CPT"].total == 1
    assert summary.by_question_type["GENERAL"].total == 1
    assert summary.by_model["unknown"].total == 2
