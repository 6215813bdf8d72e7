"""
Knowledge Cache

Persistent (family, code) -> description store with get-or-fetch semantics.
Entries are fetched at most once from the family's resolver, then served
from the JSON document on every later lookup and run.
"""

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Iterable, Mapping, Optional

from pydantic import ValidationError

from coding_exam.classify import dedupe_preserve_order, detect_code_family, find_codes
from coding_exam.models import CODE_FAMILIES, AnswerExplanation, CodeCacheEntry, CodeStore
from coding_exam.resolvers import CodeResolver


logger = logging.getLogger(__name__)

CODE_CACHE_PATH = os.getenv("CODE_CACHE_PATH", "data/cached_code_descriptions.json")
PLACEHOLDER_MARKER = "(description unavailable)"


class CacheFormatError(ValueError):
    """Raised when the persisted cache document cannot be read."""


def placeholder_description(family: str, code: str) -> str:
    """Stand-in description for a code no resolver could find."""
    return f"{family} code {code} {PLACEHOLDER_MARKER}"


def is_placeholder(description: str) -> bool:
    return PLACEHOLDER_MARKER in description


class KnowledgeCache:
    """Code descriptions backed by a JSON file and per-family resolvers."""

    def __init__(
        self,
        store: CodeStore,
        path: Optional[Path] = None,
        resolvers: Optional[Mapping[str, CodeResolver]] = None,
        use_explanations: bool = False,
    ):
        self.store = store
        self.path = Path(path) if path else None
        self.resolvers = dict(resolvers or {})
        self.use_explanations = use_explanations
        self._locks = {family: asyncio.Lock() for family in CODE_FAMILIES}
        self._index: dict[tuple[str, str], CodeCacheEntry] = {}
        for family in CODE_FAMILIES:
            for entry in store.entries(family):
                self._index.setdefault((family, entry.code), entry)

    @classmethod
    def load(
        cls,
        path: Path | str = CODE_CACHE_PATH,
        resolvers: Optional[Mapping[str, CodeResolver]] = None,
        **kwargs,
    ) -> "KnowledgeCache":
        """Read the cache document, creating an empty one if it does not exist."""
        path = Path(path)
        if path.exists():
            try:
                store = CodeStore.model_validate_json(path.read_text(encoding="utf-8"))
            except ValidationError as exc:
                raise CacheFormatError(f"Invalid code cache {path}: {exc}") from exc
            cache = cls(store, path=path, resolvers=resolvers, **kwargs)
            logger.info("Loaded %d cached code descriptions from %s", len(cache), path)
            return cache

        logger.info("Creating new cache file with empty structure at %s", path)
        cache = cls(CodeStore(), path=path, resolvers=resolvers, **kwargs)
        cache.flush()
        return cache

    def __len__(self) -> int:
        return len(self._index)

    def __contains__(self, key: tuple[str, str]) -> bool:
        return key in self._index

    def flush(self) -> None:
        """Write the whole store to disk."""
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = self.store.model_dump(mode="json", by_alias=True, exclude_none=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        os.replace(tmp_path, self.path)

    def get(self, family: str, code: str) -> Optional[CodeCacheEntry]:
        """Return the cached entry without fetching."""
        return self._index.get((family, code))

    def describe(self, entry: CodeCacheEntry, use_explanations: Optional[bool] = None) -> str:
        if use_explanations is None:
            use_explanations = self.use_explanations
        if use_explanations and entry.explanation:
            return f"{entry.description} | Explanation: {entry.explanation}"
        return entry.description

    def _insert(self, family: str, entry: CodeCacheEntry) -> None:
        self.store.entries(family).append(entry)
        self._index[(family, entry.code)] = entry
        self.flush()

    async def _fetch(self, family: str, code: str, resolver: CodeResolver) -> str:
        try:
            description = await resolver.fetch(code)
        except Exception as exc:
            logger.warning("Error fetching %s code %s: %s", family, code, exc)
            description = None
        if not description:
            return placeholder_description(family, code)
        return description

    async def resolve(self, family: str, code: str, use_explanations: Optional[bool] = None) -> str:
        """Return the description for a code, fetching and persisting it on a miss.

        Never raises for lookup failures: an unresolvable code gets a
        placeholder description that is stored like any other.
        """
        if family not in self._locks:
            raise ValueError(f"Unknown code family: {family}")

        entry = self.get(family, code)
        if entry is not None:
            return self.describe(entry, use_explanations)

        resolver = self.resolvers.get(family)
        if resolver is None:
            logger.warning("No resolver configured for %s codes; %s left unresolved", family, code)
            return placeholder_description(family, code)

        async with self._locks[family]:
            entry = self.get(family, code)
            if entry is None:
                logger.info("Code %s not found in cache, fetching %s description", code, family)
                description = await self._fetch(family, code, resolver)
                entry = CodeCacheEntry(code=code, description=description)
                self._insert(family, entry)
        return self.describe(entry, use_explanations)

    async def resolve_many(
        self,
        family: str,
        codes: Iterable[str],
        use_explanations: Optional[bool] = None,
    ) -> dict[str, str]:
        """Resolve codes in order after de-duplication."""
        results = {}
        for code in dedupe_preserve_order(codes):
            results[code] = await self.resolve(family, code, use_explanations)
        return results

    def set_explanation(self, family: str, code: str, explanation: str) -> bool:
        """Overwrite the explanation of an existing entry and persist it."""
        entry = self.get(family, code)
        if entry is None:
            return False
        entry.explanation = explanation
        self.flush()
        return True

    async def merge_explanations(self, explanations: Iterable[AnswerExplanation]) -> dict[str, int]:
        """Attach official answer explanations to the codes they mention.

        Codes not yet cached are resolved first so the stored description is
        always the resolver's; codes no resolver can reach are skipped.
        """
        code_explanations: dict[str, str] = {}
        for item in explanations:
            primary = find_codes(item.correct_answer)
            if primary:
                code_explanations[primary[0]] = item.explanation
            for code in find_codes(item.explanation):
                code_explanations[code] = item.explanation

        explanations_added = 0
        new_codes_added = 0
        for code, explanation in code_explanations.items():
            family = detect_code_family(code)
            if family is None:
                continue
            entry = self.get(family, code)
            if entry is None:
                await self.resolve(family, code)
                entry = self.get(family, code)
                if entry is None:
                    logger.info("No resolver for %s code %s; explanation not merged", family, code)
                    continue
                new_codes_added += 1
            else:
                explanations_added += 1
            entry.explanation = explanation

        self.flush()
        logger.info(
            "Added explanations to %d existing code entries, %d new entries",
            explanations_added,
            new_codes_added,
        )
        return {"explanations_added": explanations_added, "new_codes_added": new_codes_added}
