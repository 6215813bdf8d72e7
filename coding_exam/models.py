"""Data models for the Medical Coding Exam Agent."""

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


QuestionType = Literal["CPT", "ICD-10", "HCPCS", "GENERAL"]
CodeFamily = Literal["CPT", "ICD-10", "HCPCS"]
VerificationStatus = Literal["skipped", "verified", "unverified"]

CODE_FAMILIES: tuple[str, ...] = ("CPT", "ICD-10", "HCPCS")
QUESTION_TYPES: tuple[str, ...] = ("CPT", "ICD-10", "HCPCS", "GENERAL")


class Answer(BaseModel):
    """Structured answer for a single question."""
    selected_option: str = Field(default="")
    confidence: int = Field(default=0)
    reasoning: str = Field(default="")
    model: str = Field(default="unknown")
    source: str = Field(default="llm")


class VerifiedAnswer(Answer):
    """Answer produced by an escalation strategy."""
    strategy: str = Field(default="")


class Question(BaseModel):
    """A multiple-choice exam question."""
    id: int
    text: str
    options: dict[str, str] = Field(default_factory=dict, description="Options A, B, C, D")
    question_type: Optional[QuestionType] = None
    my_answer: Optional[Answer] = None
    verified_answer: Optional[VerifiedAnswer] = None
    verification_status: Optional[VerificationStatus] = None
    correct_answer: Optional[str] = None
    is_correct: Optional[bool] = None

    @property
    def final_record(self) -> Optional[Answer]:
        return self.verified_answer or self.my_answer

    @property
    def final_answer(self) -> Optional[str]:
        record = self.final_record
        if record is None or not record.selected_option:
            return None
        return record.selected_option

    @property
    def final_confidence(self) -> int:
        record = self.final_record
        return record.confidence if record else 0

    def options_text(self) -> str:
        return "\n".join(f"{k}. {v}" for k, v in sorted(self.options.items()))


class CodeCacheEntry(BaseModel):
    """One cached code description."""
    code: str
    description: str
    explanation: Optional[str] = None
    source: Optional[str] = None


class CodeStore(BaseModel):
    """Persisted cache document, one list of entries per code family.

    Unknown top-level keys are rejected so a typo'd family never silently
    becomes a second, unread store.
    """
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    cpt: list[CodeCacheEntry] = Field(default_factory=list, alias="CPT")
    icd10: list[CodeCacheEntry] = Field(default_factory=list, alias="ICD-10")
    hcpcs: list[CodeCacheEntry] = Field(default_factory=list, alias="HCPCS")

    def entries(self, family: str) -> list[CodeCacheEntry]:
        if family == "CPT":
            return self.cpt
        if family == "ICD-10":
            return self.icd10
        if family == "HCPCS":
            return self.hcpcs
        raise KeyError(family)


class VerificationOutcome(BaseModel):
    """Parsed result of a verification strategy."""
    model_config = ConfigDict(populate_by_name=True)

    final_answer: Literal["A", "B", "C", "D"] = Field(alias="finalAnswer")
    confidence: int = Field(ge=1, le=10)
    reasoning_summary: str = Field(default="", alias="reasoningSummary")


class VerificationAttempt(BaseModel):
    """One escalation strategy invocation. Not persisted."""
    strategy: str
    raw_response: str = ""
    succeeded: bool = False
    outcome: Optional[VerificationOutcome] = None
    error: Optional[str] = None


class AnswerExplanation(BaseModel):
    """Official explanation for a question, used to enrich the cache."""
    model_config = ConfigDict(populate_by_name=True)

    number: int
    correct_answer: str = Field(default="", alias="correctAnswer")
    explanation: str = ""


class TestResult(BaseModel):
    """Outcome of one question against the answer key."""
    __test__ = False

    number: int
    my_answer: Optional[str] = None
    correct_answer: str
    is_correct: bool


class GroupStats(BaseModel):
    total: int = 0
    correct: int = 0
    percentage: int = 0


class QuestionLogEntry(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    question_type: str
    model_used: str
    is_correct: bool
    confidence: int
    initial_answer: Optional[str] = None
    verified_answer: Optional[str] = None
    correct_answer: Optional[str] = None


class PerformanceSummary(BaseModel):
    total_questions: int = 0
    correct_answers: int = 0
    incorrect_answers: int = 0
    percentage: int = 0
    verified_count: int = 0
    by_question_type: dict[str, GroupStats] = Field(
        default_factory=lambda: {t: GroupStats() for t in QUESTION_TYPES}
    )
    by_model: dict[str, GroupStats] = Field(default_factory=dict)


class PerformanceLog(BaseModel):
    timestamp: str
    questions: dict[str, QuestionLogEntry] = Field(default_factory=dict)
    summary: PerformanceSummary = Field(default_factory=PerformanceSummary)
