"""
Local Codebook

Offline code descriptions from files under the codes directory:
1. SQLite database (`codes.sqlite`, table `code_best`)
2. Flat files (ICD-10-CM order file, HCPCS fixed-width file, CPT txt/json)
3. Supplementary JSON file
"""

import json
import logging
import os
import re
import sqlite3
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional


logger = logging.getLogger(__name__)

ICD10_FILE = os.getenv("ICD10_CODES_FILE", "icd10cm-codes-2026.txt")
HCPCS_FILE = os.getenv("HCPCS_CODES_FILE", "HCPC2026_JAN_ANWEB_01122026.txt")

_DB_SYSTEMS = {
    "CPT": "CPT",
    "ICD-10": "ICD10CM",
    "HCPCS": "HCPCS",
}


def get_codes_dir() -> Path:
    """Get the codes directory path."""
    base_dir = Path(__file__).resolve().parents[1]
    return Path(os.getenv("MEDICAL_CODES_DIR", str(base_dir / "codes")))


def _normalize_code(code: str) -> str:
    """Normalize a code to uppercase alphanumeric only."""
    return re.sub(r"[^A-Z0-9]", "", code.upper())


@dataclass
class LocalCodebook:
    """Descriptions loaded lazily from one codes directory."""
    codes_dir: Path
    db_path: Optional[Path] = None
    icd10: dict[str, str] = field(default_factory=dict)
    hcpcs: dict[str, str] = field(default_factory=dict)
    cpt: dict[str, str] = field(default_factory=dict)
    supplement: dict[str, str] = field(default_factory=dict)
    loaded: set[str] = field(default_factory=set)
    _db_conn: Optional[sqlite3.Connection] = None

    def __post_init__(self) -> None:
        if self.db_path is None:
            self.db_path = Path(os.getenv("CODE_DB_PATH", str(self.codes_dir / "codes.sqlite")))

    # -------------------------------------------------------------------------
    # Loaders
    # -------------------------------------------------------------------------

    def _load(self, family: str) -> None:
        if family in self.loaded:
            return
        self.loaded.add(family)
        try:
            if family == "ICD-10":
                self._load_icd10()
            elif family == "HCPCS":
                self._load_hcpcs()
            elif family == "CPT":
                self._load_cpt()
        except (OSError, ValueError) as exc:
            logger.warning("Could not load %s codebook from %s: %s", family, self.codes_dir, exc)

        if "supplement" not in self.loaded:
            self.loaded.add("supplement")
            self._load_supplement()

    def _load_icd10(self) -> None:
        path = self.codes_dir / ICD10_FILE
        if not path.exists():
            return
        with path.open("r", encoding="utf-8", errors="replace") as f:
            for line in f:
                parts = line.strip().split(None, 1)
                if len(parts) == 2 and parts[1].strip():
                    self.icd10[_normalize_code(parts[0])] = parts[1].strip()

    def _load_hcpcs(self) -> None:
        path = self.codes_dir / HCPCS_FILE
        if not path.exists():
            return
        with path.open("r", encoding="utf-8", errors="replace") as f:
            for line in f:
                if len(line) < 9:
                    continue
                code = line[:5].strip().upper()
                if not re.fullmatch(r"[A-Z][0-9]{4}", code):
                    continue
                # Fixed-width record: description starts after the sequence number.
                offset = 11 if len(line) >= 11 and line[8:11].isdigit() else 8
                desc = line[offset:offset + 80].strip()
                if desc:
                    self.hcpcs[code] = desc

    def _load_cpt(self) -> None:
        txt_path = self.codes_dir / "cpt_codes.txt"
        json_path = self.codes_dir / "cpt_codes.json"

        if txt_path.exists():
            with txt_path.open("r", encoding="utf-8", errors="replace") as f:
                for line in f:
                    parts = line.strip().split(None, 1)
                    if len(parts) == 2 and parts[1].strip():
                        self.cpt[_normalize_code(parts[0])] = parts[1].strip()

        if json_path.exists():
            data = json.loads(json_path.read_text(encoding="utf-8"))
            if isinstance(data, dict):
                for code, desc in data.items():
                    if desc:
                        self.cpt[_normalize_code(str(code))] = str(desc)

    def _load_supplement(self) -> None:
        path = self.codes_dir / "cpt_supplement.json"
        if not path.exists():
            return
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Could not load code supplement %s: %s", path, exc)
            return
        if isinstance(data, dict):
            self.supplement = {_normalize_code(str(k)): str(v) for k, v in data.items()}

    # -------------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------------

    def _get_db(self) -> Optional[sqlite3.Connection]:
        if "sqlite" in self.loaded:
            return self._db_conn
        self.loaded.add("sqlite")
        if self.db_path and self.db_path.exists():
            try:
                self._db_conn = sqlite3.connect(self.db_path)
            except sqlite3.Error as exc:
                logger.warning("Could not open code database %s: %s", self.db_path, exc)
        return self._db_conn

    def _lookup_sqlite(self, family: str, normalized: str) -> Optional[str]:
        conn = self._get_db()
        if conn is None:
            return None
        system = _DB_SYSTEMS[family]
        try:
            row = conn.execute(
                "SELECT description FROM code_best WHERE code_norm=? AND system=? LIMIT 1",
                (normalized, system),
            ).fetchone()
            if row is None and family == "ICD-10":
                row = conn.execute(
                    "SELECT description FROM code_best "
                    "WHERE system=? AND ? LIKE code_norm || '%' "
                    "ORDER BY LENGTH(code_norm) DESC LIMIT 1",
                    (system, normalized),
                ).fetchone()
        except sqlite3.Error as exc:
            logger.warning("Code database lookup failed for %s: %s", normalized, exc)
            return None
        return row[0] if row else None

    def _lookup_icd10_prefix(self, normalized: str) -> Optional[str]:
        for i in range(len(normalized) - 1, 2, -1):
            desc = self.icd10.get(normalized[:i])
            if desc:
                return desc
        return None

    def lookup(self, family: str, code: str) -> Optional[str]:
        """Find a description for a code of the given family, or None."""
        self._load(family)
        normalized = _normalize_code(code)

        desc = self._lookup_sqlite(family, normalized)
        if desc:
            return desc

        if family == "CPT":
            desc = self.cpt.get(normalized)
        elif family == "HCPCS":
            desc = self.hcpcs.get(normalized)
        elif family == "ICD-10":
            desc = self.icd10.get(normalized) or self._lookup_icd10_prefix(normalized)
        if desc:
            return desc

        return self.supplement.get(normalized)

    def close(self) -> None:
        if self._db_conn is not None:
            self._db_conn.close()
            self._db_conn = None


class LocalCodebookResolver:
    """Resolver adapter for one family of a LocalCodebook."""

    def __init__(self, family: str, codebook: LocalCodebook):
        self.family = family
        self.codebook = codebook

    async def fetch(self, code: str) -> Optional[str]:
        return self.codebook.lookup(self.family, code)
