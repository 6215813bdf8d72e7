"""
Medical Coding Exam Agent

Answers medical coding exams with cached code descriptions, escalates
low-confidence answers, and scores the run against an answer key.
"""

from .agent import solve_all_questions, solve_question
from .cache import KnowledgeCache
from .classify import classify_question, extract_codes
from .evaluate import compare_answers, load_answer_key, score
from .ingestion import load_questions
from .models import Answer, Question, VerifiedAnswer
from .pipeline import ExamRun, run_pipeline
from .verify import ConfidencePolicy, EscalationChain, VerificationStrategy, build_default_chain

__all__ = [
    "Answer",
    "ConfidencePolicy",
    "EscalationChain",
    "ExamRun",
    "KnowledgeCache",
    "Question",
    "VerificationStrategy",
    "VerifiedAnswer",
    "build_default_chain",
    "classify_question",
    "compare_answers",
    "extract_codes",
    "load_answer_key",
    "load_questions",
    "run_pipeline",
    "score",
    "solve_all_questions",
    "solve_question",
]
