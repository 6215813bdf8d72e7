import json

from coding_exam.ingestion import load_explanations, load_questions, parse_questions_text


EXAM_TEXT = """Medical Coding Ace
1. A patient had a 0.4 cm benign lesion excised
from the arm. Which code is reported?
A. 11400
B. 11600
C. 17000
D. 69210
TIMER START
2. Which HCPCS code reports a cane?
A. E0100
B. E0260 hospital bed,
semi-electric
"""


def test_parse_questions_text_handles_continuations():
    questions = parse_questions_text(EXAM_TEXT)

    assert [q.id for q in questions] == [1, 2]
    assert questions[0].text == "A patient had a 0.4 cm benign lesion excised from the arm. Which code is reported?"
    assert questions[0].options == {"A": "11400", "B": "11600", "C": "17000", "D": "69210"}
    assert questions[1].options["B"] == "E0260 hospital bed, semi-electric"


def test_load_questions_json(tmp_path):
    path = tmp_path / "questions.json"
    path.write_text(json.dumps([
        {"number": 1, "text": "Which code?", "options": ["A. 99213", "B. 99214"]},
        {"id": 2, "text": "Which dx?", "options": {"a": "E11.9", "b": "E10.9"}},
    ]))

    questions = load_questions(path)

    assert questions[0].options == {"A": "99213", "B": "99214"}
    assert questions[1].id == 2
    assert questions[1].options == {"A": "E11.9", "B": "E10.9"}


def test_load_explanations(tmp_path):
    path = tmp_path / "explanations.json"
    path.write_text(json.dumps([{"number": 4, "correctAnswer": "B. 11600", "explanation": "Malignant lesion."}]))

    explanations = load_explanations(path)

    assert explanations[0].number == 4
    assert explanations[0].correct_answer == "B. 11600"
