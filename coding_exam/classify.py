"""
Question classification and code extraction.

A question is routed to one of four families (HCPCS, ICD-10, CPT, GENERAL)
from keywords in its text and the shape of code tokens in its options.
"""

import re
from typing import Iterable, Mapping, Optional

from coding_exam.models import Question


_CPT_RE = re.compile(r"\b\d{5}\b")
_ICD10_RE = re.compile(r"\b[A-Z]\d{2}(?:\.[0-9A-Z]{1,4})?\b")
_HCPCS_RE = re.compile(r"\b[A-Z]\d{4}\b")

FAMILY_PATTERNS = {
    "CPT": _CPT_RE,
    "ICD-10": _ICD10_RE,
    "HCPCS": _HCPCS_RE,
}

_HCPCS_KEYWORDS = ("hcpcs", "level ii code", "durable medical equipment", "prosthetic")
_ICD10_KEYWORDS = ("icd-10", "diagnosis code", "diagnostic code", "according to icd")
_CPT_KEYWORDS = ("cpt", "procedure code", "surgical code")


def _option_values(options: Mapping[str, str] | Iterable[str]) -> list[str]:
    if isinstance(options, Mapping):
        return [options[key] for key in sorted(options)]
    return list(options)


def _has_hcpcs_option(options: list[str]) -> bool:
    # C-prefixed codes overlap with CPT/temporary codes and never decide HCPCS.
    for option in options:
        for match in _HCPCS_RE.finditer(option):
            if not match.group(0).startswith("C"):
                return True
    return False


def classify_question(question: Question) -> str:
    """Assign a code family to a question and record it on the question."""
    options = _option_values(question.options)
    full_text = f"{question.text} {' '.join(options)}".lower()

    if any(keyword in full_text for keyword in _HCPCS_KEYWORDS) or _has_hcpcs_option(options):
        family = "HCPCS"
    elif any(keyword in full_text for keyword in _ICD10_KEYWORDS) or any(
        _ICD10_RE.search(option) for option in options
    ):
        family = "ICD-10"
    elif any(keyword in full_text for keyword in _CPT_KEYWORDS) or any(
        _CPT_RE.search(option) for option in options
    ):
        family = "CPT"
    else:
        family = "GENERAL"

    question.question_type = family
    return family


def extract_codes(options: Mapping[str, str] | Iterable[str], family: str) -> list[str]:
    """Extract code tokens of one family from the options, in option order."""
    pattern = FAMILY_PATTERNS.get(family)
    if pattern is None:
        return []
    codes = []
    for option in _option_values(options):
        codes.extend(match.group(0) for match in pattern.finditer(option))
    return codes


def dedupe_preserve_order(items: Iterable[str]) -> list[str]:
    """De-duplicate exact values while preserving order."""
    seen = set()
    result = []
    for item in items:
        if item in seen:
            continue
        seen.add(item)
        result.append(item)
    return result


def detect_code_family(code: str) -> Optional[str]:
    """Map a single bare code to its family, or None."""
    code = code.strip()
    if re.fullmatch(r"\d{5}", code):
        return "CPT"
    if re.fullmatch(r"[A-Z]\d{4}", code):
        return "HCPCS"
    if re.fullmatch(r"[A-Z]\d{2}(?:\.[0-9A-Z]{1,4})?", code):
        return "ICD-10"
    return None


def find_codes(text: str) -> list[str]:
    """Find any CPT, HCPCS or ICD-10 tokens in free text."""
    if not text:
        return []
    codes = []
    for pattern in (_HCPCS_RE, _ICD10_RE, _CPT_RE):
        codes.extend(match.group(0) for match in pattern.finditer(text))
    return dedupe_preserve_order(codes)
