import random

import pytest

from conftest import ScriptedModel, make_question, verification_block
from coding_exam.models import CodeCacheEntry, CodeStore
from coding_exam.verify import (
    ConfidencePolicy,
    EscalationChain,
    VerificationParseError,
    VerificationStrategy,
    build_default_chain,
    challenge_medium_confidence,
    parse_verification_block,
)


def _chain(*models, policies=None, threshold=6):
    policies = policies or [ConfidencePolicy.REPLACE] * len(models)
    return EscalationChain(
        strategies=[
            VerificationStrategy(name=f"s{i}", model=model, policy=policy)
            for i, (model, policy) in enumerate(zip(models, policies))
        ],
        threshold=threshold,
    )


def test_parse_verification_block():
    outcome = parse_verification_block(verification_block("C", 9, "Guideline I.C.4"))
    assert outcome.final_answer == "C"
    assert outcome.confidence == 9
    assert outcome.reasoning_summary == "Guideline I.C.4"


def test_parse_uses_last_block():
    text = verification_block("A", 4) + "\n\nOn reflection:\n" + verification_block("D", 7)
    assert parse_verification_block(text).final_answer == "D"


@pytest.mark.parametrize("text", [
    "",
    "Answer is B",
    "```json\n{\"finalAnswer\": \"B\", \"confidence\": 8}\n",
    verification_block() + "\nHope this helps!",
    "```json\n{\"finalAnswer\": \"E\", \"confidence\": 8}\n```",
    "```json\n{\"finalAnswer\": \"B\", \"confidence\": 11}\n```",
    "```json\n{not json}\n```",
])
def test_parse_rejects_malformed_blocks(text):
    with pytest.raises(VerificationParseError):
        parse_verification_block(text)


@pytest.mark.asyncio
async def test_high_confidence_bypasses_chain():
    model = ScriptedModel([verification_block("A", 9)])
    question = make_question(confidence=7)

    attempts = await _chain(model).verify(question)

    assert attempts == []
    assert question.verification_status == "skipped"
    assert question.verified_answer is None
    assert model.calls == []


@pytest.mark.asyncio
async def test_low_confidence_escalates_and_first_success_wins():
    first = ScriptedModel(["I think it's C but I'm not formatting this."], name="reasoner")
    second = ScriptedModel([verification_block("C", 8)], name="searcher")
    third = ScriptedModel([verification_block("D", 9)], name="fallback")
    question = make_question(confidence=3, answer="B")

    attempts = await _chain(first, second, third).verify(question)

    assert [a.succeeded for a in attempts] == [False, True]
    assert question.verification_status == "verified"
    assert question.verified_answer.selected_option == "C"
    assert question.verified_answer.strategy == "s1"
    assert question.verified_answer.model == "searcher"
    assert question.final_answer == "C"
    assert question.my_answer.selected_option == "B"
    assert third.calls == []


@pytest.mark.asyncio
async def test_exhausted_chain_keeps_initial_answer():
    question = make_question(confidence=2, answer="B")
    chain = _chain(ScriptedModel([RuntimeError("rate limited")]), ScriptedModel(["no block"]))

    attempts = await chain.verify(question)

    assert len(attempts) == 2
    assert "RuntimeError" in attempts[0].error
    assert question.verification_status == "unverified"
    assert question.verified_answer is None
    assert question.final_answer == "B"


@pytest.mark.asyncio
async def test_confirm_policy_keeps_higher_confidence_on_agreement():
    question = make_question(confidence=5, answer="B")
    chain = _chain(ScriptedModel([verification_block("B", 4)]), policies=[ConfidencePolicy.CONFIRM])
    await chain.verify(question)
    assert question.verified_answer.confidence == 5


@pytest.mark.asyncio
async def test_confirm_policy_takes_new_confidence_on_change():
    question = make_question(confidence=5, answer="B")
    chain = _chain(ScriptedModel([verification_block("A", 4)]), policies=[ConfidencePolicy.CONFIRM])
    await chain.verify(question)
    assert question.verified_answer.confidence == 4


@pytest.mark.asyncio
async def test_replace_policy_uses_strategy_confidence():
    question = make_question(confidence=5, answer="B")
    await _chain(ScriptedModel([verification_block("B", 4)])).verify(question)
    assert question.verified_answer.confidence == 4


@pytest.mark.asyncio
async def test_context_comes_from_cache_without_fetching(make_cache):
    store = CodeStore(CPT=[CodeCacheEntry(code="11400", description="Excision benign lesion")])
    cache = make_cache(store=store)
    model = ScriptedModel([verification_block("A", 8)])
    question = make_question(confidence=3, options={"A": "11400", "B": "11600"})

    await _chain(model).verify(question, cache)

    prompt = model.calls[0][-1]["content"]
    assert "11400: Excision benign lesion" in prompt
    assert "11600:" not in prompt
    assert len(cache) == 1


@pytest.mark.asyncio
async def test_verify_all_counts():
    questions = [
        make_question(qid=1, confidence=9, answer="A"),
        make_question(qid=2, confidence=3, answer="A"),
        make_question(qid=3, confidence=4, answer="C"),
    ]
    model = ScriptedModel([verification_block("B", 8), "garbage"])

    counts = await _chain(model).verify_all(questions)

    assert counts == {"verified": 1, "unverified": 1, "skipped": 1, "changed": 1}


def test_build_default_chain_skips_providers_without_credentials(monkeypatch):
    import coding_exam.llm as llm

    monkeypatch.setattr(llm, "USE_LOCAL_MODELS", False)
    monkeypatch.setattr(llm, "LLM_PROVIDER", "openai")
    monkeypatch.setattr(llm, "OPENAI_API_KEY", "sk-test")
    monkeypatch.setattr(llm, "PERPLEXITY_API_KEY", None)

    chain = build_default_chain()

    assert [s.name for s in chain.strategies] == ["reasoning", "fallback"]
    assert [s.policy for s in chain.strategies] == [ConfidencePolicy.REPLACE, ConfidencePolicy.REPLACE]


@pytest.mark.asyncio
async def test_challenge_changes_medium_confidence_answer():
    question = make_question(confidence=6, answer="A")
    model = ScriptedModel(["CHALLENGE_RESULT: CHANGED\nFINAL_ANSWER: C\nEVIDENCE: 2024 guideline update."], name="research")

    changed = await challenge_medium_confidence([question], model, sample_rate=1.0, rng=random.Random(0))

    assert changed == 1
    assert question.final_answer == "C"
    assert question.verified_answer.strategy == "challenge"
    assert question.verified_answer.confidence == 6


@pytest.mark.asyncio
async def test_challenge_disabled_by_default_and_ignores_other_bands():
    questions = [make_question(qid=1, confidence=7), make_question(qid=2, confidence=9)]
    model = ScriptedModel([])

    assert await challenge_medium_confidence(questions, model) == 0
    assert await challenge_medium_confidence(questions[1:], model, sample_rate=1.0) == 0
    assert model.calls == []
