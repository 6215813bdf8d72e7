"""
Low-confidence verification.

Questions answered below the confidence threshold are re-derived by an
ordered chain of strategies. Each strategy must end its response with a
single fenced JSON block:

    ```json
    {"finalAnswer": "B", "confidence": 8, "reasoningSummary": "..."}
    ```

The first strategy whose block parses wins; a question whose strategies all
fail keeps its initial answer and is marked unverified.
"""

import logging
import os
import random
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from pydantic import ValidationError

from coding_exam.cache import KnowledgeCache
from coding_exam.classify import classify_question, dedupe_preserve_order, extract_codes
from coding_exam.llm import (
    LanguageModel,
    get_fallback_model,
    get_perplexity_model,
    get_verify_model,
)
from coding_exam.models import (
    Question,
    VerificationAttempt,
    VerificationOutcome,
    VerifiedAnswer,
)


logger = logging.getLogger(__name__)

CONFIDENCE_THRESHOLD = int(os.getenv("VERIFY_CONFIDENCE_THRESHOLD", "6"))
CHALLENGE_SAMPLE_RATE = float(os.getenv("CHALLENGE_SAMPLE_RATE", "0"))

_JSON_FENCE = "```json"
_FENCE = "```"


class VerificationParseError(ValueError):
    """The response did not end with a valid verification block."""


class ConfidencePolicy(str, Enum):
    """How a strategy's confidence combines with the answer it re-examines.

    REPLACE: the strategy re-derives the answer; its confidence stands.
    CONFIRM: the strategy checks the current answer; agreement keeps the
    higher of the two confidences, a changed answer takes the new one.
    """
    REPLACE = "replace"
    CONFIRM = "confirm"


def parse_verification_block(text: str) -> VerificationOutcome:
    """Locate the trailing ```json block and validate it."""
    if not text:
        raise VerificationParseError("Empty response")
    start = text.rfind(_JSON_FENCE)
    if start == -1:
        raise VerificationParseError("Could not find the mandatory JSON block in the response")
    body_start = start + len(_JSON_FENCE)
    end = text.find(_FENCE, body_start)
    if end == -1:
        raise VerificationParseError("JSON block is not terminated")
    if text[end + len(_FENCE):].strip():
        raise VerificationParseError("Unexpected text after the JSON block")
    try:
        return VerificationOutcome.model_validate_json(text[body_start:end])
    except ValidationError as exc:
        raise VerificationParseError(f"Invalid verification block: {exc}") from exc


def _analysis_text(text: str) -> str:
    return text[: text.rfind(_JSON_FENCE)].strip()


OUTPUT_FORMAT = """**Output Format:**
You MUST conclude your entire response with a single JSON code block in the following format. Do not add any text after this block.

```json
{
  "reasoningSummary": "A brief summary of why your answer is correct and others are wrong.",
  "finalAnswer": "[A/B/C/D]",
  "confidence": [A number from 1-10]
}
```"""


def _descriptions_block(code_descriptions: dict[str, str]) -> str:
    if not code_descriptions:
        return "(none available)"
    return "\n".join(f"{code}: {desc}" for code, desc in code_descriptions.items())


def audit_prompt(question: Question, code_descriptions: dict[str, str]) -> list[dict]:
    """Senior-auditor re-examination grounded on cached descriptions."""
    current = question.my_answer.selected_option if question.my_answer else ""
    content = f"""You are a senior medical coding auditor. Re-examine this question with detailed analysis.
Use the official code descriptions below as the source of truth.

**Question {question.id}:** {question.text}
{question.options_text()}
Current Answer: {current}

**Official Code Descriptions:**
{_descriptions_block(code_descriptions)}

**Task:**
Analyze each option against current coding guidelines, then conclude with the mandatory JSON block.

{OUTPUT_FORMAT}"""
    return [{"role": "user", "content": content}]


def research_prompt(question: Question, code_descriptions: dict[str, str]) -> list[dict]:
    """Search-grounded check of the current answer."""
    current = question.my_answer.selected_option if question.my_answer else ""
    content = f"""Research this medical coding question using current official guidelines.

Question {question.id}: {question.text}
{question.options_text()}

Current Answer: {current}

Known code descriptions:
{_descriptions_block(code_descriptions)}

Confirm the current answer if the evidence supports it; otherwise give the correct option.

{OUTPUT_FORMAT}"""
    return [
        {"role": "system", "content": "You are a medical coding researcher. Cite current CMS/AMA/AAPC guidance."},
        {"role": "user", "content": content},
    ]


@dataclass
class VerificationStrategy:
    """One (provider, prompt, confidence policy) step of the escalation chain."""
    name: str
    model: LanguageModel
    policy: ConfidencePolicy = ConfidencePolicy.REPLACE
    prompt: Callable[[Question, dict[str, str]], list[dict]] = audit_prompt

    async def attempt(self, question: Question, code_descriptions: dict[str, str]) -> VerificationAttempt:
        """Run the strategy. Provider and parse failures are returned, not raised."""
        try:
            raw = await self.model.invoke(self.prompt(question, code_descriptions))
        except Exception as exc:
            return VerificationAttempt(strategy=self.name, error=f"{type(exc).__name__}: {exc}")
        try:
            outcome = parse_verification_block(raw)
        except VerificationParseError as exc:
            return VerificationAttempt(strategy=self.name, raw_response=raw, error=str(exc))
        return VerificationAttempt(strategy=self.name, raw_response=raw, succeeded=True, outcome=outcome)

    def verified_answer(self, question: Question, attempt: VerificationAttempt) -> VerifiedAnswer:
        outcome = attempt.outcome
        if outcome is None:
            raise ValueError("Cannot build a verified answer from a failed attempt")
        previous = question.my_answer
        confidence = outcome.confidence
        if (
            self.policy is ConfidencePolicy.CONFIRM
            and previous is not None
            and previous.selected_option == outcome.final_answer
        ):
            confidence = max(previous.confidence, outcome.confidence)

        analysis = _analysis_text(attempt.raw_response)
        reasoning = f"Summary: {outcome.reasoning_summary}"
        if analysis:
            reasoning = f"{self.name} analysis:\n{analysis}\n\n{reasoning}"
        return VerifiedAnswer(
            selected_option=outcome.final_answer,
            confidence=confidence,
            reasoning=reasoning,
            model=self.model.name,
            source="verification",
            strategy=self.name,
        )


@dataclass
class EscalationChain:
    """Ordered verification strategies gated on answer confidence."""
    strategies: list[VerificationStrategy] = field(default_factory=list)
    threshold: int = CONFIDENCE_THRESHOLD

    def needs_verification(self, question: Question) -> bool:
        confidence = question.my_answer.confidence if question.my_answer else 0
        return confidence < self.threshold

    def _cached_descriptions(self, question: Question, cache: Optional[KnowledgeCache]) -> dict[str, str]:
        if cache is None:
            return {}
        family = question.question_type or classify_question(question)
        descriptions = {}
        for code in dedupe_preserve_order(extract_codes(question.options, family)):
            entry = cache.get(family, code)
            if entry is not None:
                descriptions[code] = cache.describe(entry)
            else:
                logger.debug("Code %s (%s) not found in cache", code, family)
        return descriptions

    async def verify(
        self,
        question: Question,
        cache: Optional[KnowledgeCache] = None,
    ) -> list[VerificationAttempt]:
        """Run strategies in order until one succeeds; returns every attempt made."""
        if not self.needs_verification(question):
            question.verification_status = "skipped"
            return []

        code_descriptions = self._cached_descriptions(question, cache)
        attempts = []
        for strategy in self.strategies:
            attempt = await strategy.attempt(question, code_descriptions)
            attempts.append(attempt)
            if attempt.succeeded:
                question.verified_answer = strategy.verified_answer(question, attempt)
                question.verification_status = "verified"
                logger.info(
                    "Question %s: verified with %s. Answer: %s (Conf: %s)",
                    question.id,
                    strategy.name,
                    question.verified_answer.selected_option,
                    question.verified_answer.confidence,
                )
                return attempts
            logger.info("Question %s: %s failed: %s", question.id, strategy.name, attempt.error)

        question.verification_status = "unverified"
        logger.info("Question %s: all verification strategies failed; keeping initial answer", question.id)
        return attempts

    async def verify_all(
        self,
        questions: list[Question],
        cache: Optional[KnowledgeCache] = None,
    ) -> dict[str, int]:
        """Verify every low-confidence question in order."""
        counts = {"verified": 0, "unverified": 0, "skipped": 0, "changed": 0}
        low = [q for q in questions if self.needs_verification(q)]
        if not low:
            logger.info("No low-confidence questions to verify.")
        else:
            logger.info(
                "Verifying %d low-confidence questions (confidence < %d)...",
                len(low),
                self.threshold,
            )

        for question in questions:
            await self.verify(question, cache)
            counts[question.verification_status] += 1
            if (
                question.verified_answer
                and question.my_answer
                and question.verified_answer.selected_option != question.my_answer.selected_option
            ):
                counts["changed"] += 1

        logger.info(
            "Verification complete: %d/%d verified, %d answers changed",
            counts["verified"],
            len(low),
            counts["changed"],
        )
        return counts


def build_default_chain(threshold: int = CONFIDENCE_THRESHOLD) -> EscalationChain:
    """Reasoning model, then Perplexity search, then the fallback model.

    Providers without credentials are left out of the chain.
    """
    factories = [
        ("reasoning", get_verify_model, ConfidencePolicy.REPLACE, audit_prompt),
        ("search", lambda: get_perplexity_model("search"), ConfidencePolicy.CONFIRM, research_prompt),
        ("fallback", get_fallback_model, ConfidencePolicy.REPLACE, audit_prompt),
    ]
    strategies = []
    for name, factory, policy, prompt in factories:
        try:
            model = factory()
        except ValueError as exc:
            logger.warning("Skipping %s verification strategy: %s", name, exc)
            continue
        strategies.append(VerificationStrategy(name=name, model=model, policy=policy, prompt=prompt))
    return EscalationChain(strategies=strategies, threshold=threshold)


# =============================================================================
# Medium-confidence challenge
# =============================================================================

_CHALLENGE_RESULT_RE = re.compile(r"CHALLENGE_RESULT:\s*(CONFIRMED|CHANGED)")
_CHALLENGE_ANSWER_RE = re.compile(r"FINAL_ANSWER:\s*([A-D])")
_CHALLENGE_EVIDENCE_RE = re.compile(r"EVIDENCE:\s*(.*?)(?=\n\n|$)", re.DOTALL)


def challenge_prompt(question: Question) -> list[dict]:
    content = f"""Challenge this medical coding answer by researching alternative interpretations or recent guideline changes.

Question {question.id}: {question.text}
{question.options_text()}

Current Medium-Confidence Answer: {question.final_answer}

If you find compelling evidence for a different answer, provide it. Otherwise, confirm the current answer.

Format:
CHALLENGE_RESULT: [CONFIRMED/CHANGED]
FINAL_ANSWER: [A/B/C/D]
EVIDENCE: [detailed research-based reasoning]"""
    return [
        {"role": "system", "content": "You are a critical medical coding researcher. Use latest guidelines to challenge answers."},
        {"role": "user", "content": content},
    ]


async def challenge_medium_confidence(
    questions: list[Question],
    model: LanguageModel,
    sample_rate: float = CHALLENGE_SAMPLE_RATE,
    rng: Optional[random.Random] = None,
) -> int:
    """Devil's-advocate pass over a sample of medium-confidence (6-7) answers.

    Only questions without a verified answer are eligible. Returns the number
    of answers changed.
    """
    candidates = [
        q for q in questions
        if q.verified_answer is None and q.final_answer and 6 <= q.final_confidence <= 7
    ]
    if not candidates or sample_rate <= 0:
        logger.info("No medium-confidence answers to challenge")
        return 0

    rng = rng or random.Random()
    sample_size = min(len(candidates), max(1, round(len(candidates) * sample_rate)))
    sampled = sorted(rng.sample(candidates, sample_size), key=lambda q: q.id)
    logger.info("Challenging %d of %d medium-confidence answers", sample_size, len(candidates))

    changed = 0
    for question in sampled:
        try:
            response = await model.invoke(challenge_prompt(question))
        except Exception as exc:
            logger.warning("Error challenging question %s: %s", question.id, exc)
            continue
        result_match = _CHALLENGE_RESULT_RE.search(response)
        answer_match = _CHALLENGE_ANSWER_RE.search(response)
        if not result_match or not answer_match:
            logger.info("Question %s: unparseable challenge response", question.id)
            continue
        current = question.final_answer
        final_answer = answer_match.group(1)
        if result_match.group(1) == "CHANGED" and final_answer != current:
            evidence_match = _CHALLENGE_EVIDENCE_RE.search(response)
            evidence = evidence_match.group(1).strip() if evidence_match else "No evidence provided"
            question.verified_answer = VerifiedAnswer(
                selected_option=final_answer,
                confidence=question.final_confidence,
                reasoning=f"Challenge: {evidence}",
                model=model.name,
                source="challenge",
                strategy="challenge",
            )
            changed += 1
            logger.info("Question %s: challenged %s -> %s", question.id, current, final_answer)
        else:
            logger.info("Question %s: challenge confirmed %s", question.id, current)

    logger.info("Challenge complete: %d answers changed", changed)
    return changed
