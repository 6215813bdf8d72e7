import json

import pytest

from conftest import CountingResolver
from coding_exam.cache import CacheFormatError, KnowledgeCache, is_placeholder
from coding_exam.models import AnswerExplanation, CodeCacheEntry, CodeStore


@pytest.mark.asyncio
async def test_miss_fetches_once_then_hits(make_cache, cache_path):
    resolver = CountingResolver({"99213": "Office visit, established patient"})
    cache = make_cache({"CPT": resolver})

    first = await cache.resolve("CPT", "99213")
    second = await cache.resolve("CPT", "99213")

    assert first == second == "Office visit, established patient"
    assert resolver.calls == ["99213"]
    saved = json.loads(cache_path.read_text())
    assert saved["CPT"] == [{"code": "99213", "description": "Office visit, established patient"}]


@pytest.mark.asyncio
async def test_persisted_entry_served_by_a_new_instance(make_cache, cache_path):
    await make_cache({"CPT": CountingResolver({"11400": "Excision benign lesion"})}).resolve("CPT", "11400")

    resolver = CountingResolver()
    reloaded = KnowledgeCache.load(cache_path, resolvers={"CPT": resolver})

    assert await reloaded.resolve("CPT", "11400") == "Excision benign lesion"
    assert resolver.calls == []


@pytest.mark.asyncio
async def test_failed_fetch_stores_placeholder(make_cache):
    resolver = CountingResolver(error=RuntimeError("connection refused"))
    cache = make_cache({"ICD-10": resolver})

    description = await cache.resolve("ICD-10", "E11.9")

    assert is_placeholder(description)
    assert "E11.9" in description
    assert ("ICD-10", "E11.9") in cache
    await cache.resolve("ICD-10", "E11.9")
    assert resolver.calls == ["E11.9"]


@pytest.mark.asyncio
async def test_without_resolver_placeholder_is_not_persisted(make_cache):
    cache = make_cache()
    description = await cache.resolve("CPT", "69210")
    assert is_placeholder(description)
    assert len(cache) == 0


@pytest.mark.asyncio
async def test_unknown_family_rejected(make_cache):
    with pytest.raises(ValueError):
        await make_cache().resolve("DRG", "470")


@pytest.mark.asyncio
async def test_resolve_many_dedupes_and_keeps_order(make_cache):
    resolver = CountingResolver({"11600": "Malignant lesion excision", "11400": "Benign lesion excision"})
    cache = make_cache({"CPT": resolver})

    results = await cache.resolve_many("CPT", ["11600", "11400", "11600"])

    assert list(results) == ["11600", "11400"]
    assert resolver.calls == ["11600", "11400"]


@pytest.mark.asyncio
async def test_explanation_mode(make_cache):
    store = CodeStore(CPT=[CodeCacheEntry(code="99213", description="Office visit", explanation="Use for est. pts")])
    cache = make_cache(store=store)

    assert await cache.resolve("CPT", "99213") == "Office visit"
    assert await cache.resolve("CPT", "99213", use_explanations=True) == "Office visit | Explanation: Use for est. pts"


def test_unknown_family_key_rejected_at_load(cache_path):
    cache_path.write_text(json.dumps({"CPT": [], "DRG": []}))
    with pytest.raises(CacheFormatError):
        KnowledgeCache.load(cache_path)


def test_missing_file_creates_empty_store(cache_path):
    cache = KnowledgeCache.load(cache_path)
    assert len(cache) == 0
    assert json.loads(cache_path.read_text()) == {"CPT": [], "ICD-10": [], "HCPCS": []}


@pytest.mark.asyncio
async def test_merge_explanations_resolves_new_codes(make_cache):
    store = CodeStore(CPT=[CodeCacheEntry(code="11400", description="Excision benign lesion")])
    hcpcs = CountingResolver({"J1100": "Injection, dexamethasone sodium phosphate, 1 mg"})
    cache = make_cache({"HCPCS": hcpcs}, store=store)

    counts = await cache.merge_explanations([
        AnswerExplanation(number=1, correctAnswer="A. 11400", explanation="Benign lesion, 0.5 cm or less. Not J1100."),
    ])

    assert counts == {"explanations_added": 1, "new_codes_added": 1}
    assert cache.get("CPT", "11400").explanation.startswith("Benign lesion")
    new_entry = cache.get("HCPCS", "J1100")
    assert new_entry.description == "Injection, dexamethasone sodium phosphate, 1 mg"
    assert new_entry.explanation.startswith("Benign lesion")
    assert hcpcs.calls == ["J1100"]


@pytest.mark.asyncio
async def test_merged_code_keeps_real_description(make_cache):
    resolver = CountingResolver({"99214": "Office visit, established patient, moderate complexity"})
    cache = make_cache({"CPT": resolver})

    await cache.merge_explanations([
        AnswerExplanation(number=7, correctAnswer="B. 99214", explanation="Moderate MDM supports 99214."),
    ])

    assert await cache.resolve("CPT", "99214") == "Office visit, established patient, moderate complexity"
    assert await cache.resolve("CPT", "99214", use_explanations=True) == (
        "Office visit, established patient, moderate complexity | Explanation: Moderate MDM supports 99214."
    )
    assert resolver.calls == ["99214"]


@pytest.mark.asyncio
async def test_merge_skips_codes_without_resolver(make_cache):
    cache = make_cache()

    counts = await cache.merge_explanations([
        AnswerExplanation(number=2, correctAnswer="C. 17000", explanation="Destruction of premalignant lesion."),
    ])

    assert counts == {"explanations_added": 0, "new_codes_added": 0}
    assert len(cache) == 0


def test_set_explanation_requires_existing_entry(make_cache, cache_path):
    store = CodeStore(HCPCS=[CodeCacheEntry(code="J1100", description="Dexamethasone injection")])
    cache = make_cache(store=store)

    assert cache.set_explanation("HCPCS", "J1100", "Per 1 mg") is True
    assert cache.set_explanation("HCPCS", "J9999", "nope") is False
    saved = json.loads(cache_path.read_text())
    assert saved["HCPCS"][0]["explanation"] == "Per 1 mg"
