from __future__ import annotations

"""Product catalog parsing, lookup and group detection.

This module turns a delimited product list into ProductRecord objects and provides
the deterministic lookup helpers used by intent carry and prompt building.
"""

import csv
import hashlib
import io
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, FrozenSet, List, Optional, Sequence, Tuple

import httpx

from .errors import CatalogLoadError
from .utils import is_numeric_token, meaningful_tokens, normalize_key, tokenize

logger = logging.getLogger("shopchat.catalog")

NAME_KEYS = ["name", "product", "product name", "ชื่อสินค้า", "สินค้า", "ชื่อ"]
PRICE_KEYS = ["price", "ราคา", "ราคาขาย"]
UNIT_KEYS = ["unit", "หน่วย", "หน่วยนับ"]
ALIAS_KEYS = ["alias", "aliases", "ชื่อเรียก", "ชื่ออื่น", "ชื่อเรียกอื่น"]
TAG_KEYS = ["tag", "tags", "category", "หมวด", "หมวดหมู่", "แท็ก"]
SPEC_KEYS = ["spec", "specification", "size", "ขนาด", "สเปค", "สเปก"]
BUNDLE_KEYS = ["pcs_per_bundle", "pcs per bundle", "bundle", "ต่อมัด", "จำนวนต่อมัด", "เส้นต่อมัด"]

# Order matters for partial header matches: "ชื่อ" is a prefix of the alias headers.
FIELD_KEYS: List[Tuple[str, List[str]]] = [
    ("aliases", ALIAS_KEYS),
    ("tags", TAG_KEYS),
    ("specification", SPEC_KEYS),
    ("pcs_per_bundle", BUNDLE_KEYS),
    ("price", PRICE_KEYS),
    ("unit", UNIT_KEYS),
    ("name", NAME_KEYS),
]

MULTI_VALUE_RE = re.compile(r"[|;,/]")
CODE_RE = re.compile(r"#\s*(\d+)")
PRICE_CLEAN_RE = re.compile(r"[,\s฿]|บาท")


@dataclass(frozen=True)
class ProductRecord:
    """Fixed-shape catalog record; optional fields stay None when the column is absent."""
    name: str
    price: Optional[float] = None
    unit: Optional[str] = None
    aliases: FrozenSet[str] = frozenset()
    tags: FrozenSet[str] = frozenset()
    specification: Optional[str] = None
    pcs_per_bundle: Optional[float] = None
    code: Optional[int] = None
    group: Optional[str] = None
    search_key: str = ""


@dataclass(frozen=True)
class CatalogMeta:
    """Metadata describing the loaded catalog source for logging."""
    source: str
    loaded_at: str
    sha256: str


@dataclass
class CatalogSnapshot:
    """Immutable-after-build view of the catalog with precomputed lookup maps."""
    records: List[ProductRecord] = field(default_factory=list)
    meta: Optional[CatalogMeta] = None

    def __post_init__(self) -> None:
        # Exact-match keys: first record wins on duplicates.
        self._exact: Dict[str, ProductRecord] = {}
        self._codes = set()
        for record in self.records:
            for key in [record.name, *sorted(record.aliases)]:
                normalized = normalize_key(key)
                if normalized and normalized not in self._exact:
                    self._exact[normalized] = record
            if record.code is not None:
                self._codes.add(record.code)
        groups = {record.group for record in self.records if record.group and len(record.group) > 1}
        self._groups = sorted(groups, key=len, reverse=True)

    def __len__(self) -> int:
        return len(self.records)

    @classmethod
    def empty(cls) -> "CatalogSnapshot":
        return cls(records=[])

    def lookup(self, query: str) -> Optional[ProductRecord]:
        """Purpose: Resolve free text to the single best catalog record.
        Inputs/Outputs: Input is a query string; output is a ProductRecord or None.
        Side Effects / State: None.
        Dependencies: Uses normalize_key, meaningful_tokens and the exact-match map.
        Failure Modes: Returns None for empty queries or when no candidate survives.
        If Removed: Group detection and intent carry cannot resolve products.
        Testing Notes: lookup(alias) must return the aliased record; ties prefer
            more overlapping name tokens, then exact code, then shortest name.
        """
        # Exact normalized name or alias match short-circuits scoring.
        key = normalize_key(query)
        if not key:
            return None
        if key in self._exact:
            return self._exact[key]

        tokens = meaningful_tokens(query)
        if not tokens:
            return None
        query_codes = {int(float(t)) for t in tokens if is_numeric_token(t) and float(t).is_integer()}
        wanted_codes = query_codes & self._codes
        query_token_set = set(tokens)

        scored: List[Tuple[Tuple[int, int, int, int], ProductRecord]] = []
        for index, record in enumerate(self.records):
            if wanted_codes and record.code not in wanted_codes:
                continue
            if not all(token in record.search_key for token in tokens):
                continue
            overlap = sum(1 for token in set(meaningful_tokens(record.name)) if token in query_token_set)
            code_rank = 0 if record.code is not None and record.code in query_codes else 1
            scored.append(((-overlap, code_rank, len(record.name), index), record))

        if not scored:
            return None
        scored.sort(key=lambda pair: pair[0])
        return scored[0][1]

    def best_guess_group(self, text: str) -> Optional[str]:
        """Purpose: Map free text to a coarse catalog grouping key.
        Inputs/Outputs: Input is text; output is a group string or None.
        Side Effects / State: None.
        Dependencies: Uses lookup, then scans known group keys inside the text.
        Failure Modes: Heuristic; short or generic group names can false-positive.
        If Removed: Intent carry cannot detect topic switches.
        Testing Notes: "ขนาดซีลาย26เท่าไหร่" and "26เต็ม" resolve to the same group.
        """
        # Prefer the matched record's own group, then a substring scan.
        record = self.lookup(text)
        if record is not None and record.group:
            return record.group
        key = normalize_key(text)
        if not key:
            return None
        for group in self._groups:
            if group in key:
                return group
        return None

    def render_lines(self) -> List[str]:
        return [render_record_line(record) for record in self.records]


class CatalogIndex:
    """Holder of the current snapshot; reloads build fully before swapping."""

    def __init__(self, snapshot: Optional[CatalogSnapshot] = None) -> None:
        self._snapshot = snapshot if snapshot is not None else CatalogSnapshot.empty()

    @property
    def snapshot(self) -> CatalogSnapshot:
        return self._snapshot

    async def reload(self, source: str) -> CatalogSnapshot:
        """Purpose: Replace the served catalog with a freshly loaded snapshot.
        Inputs/Outputs: Input is a path or URL; returns the new snapshot.
        Side Effects / State: Swaps the snapshot reference once the build succeeds.
        Dependencies: Uses load_catalog.
        Failure Modes: CatalogLoadError propagates and the previous snapshot stays.
        If Removed: Catalog changes require a process restart.
        Testing Notes: A failed reload must keep serving the old records.
        """
        # Build first; the assignment is the only mutation concurrent readers see.
        snapshot = await load_catalog(source)
        self._snapshot = snapshot
        logger.info("catalog reloaded source=%s products=%d", source, len(snapshot))
        return snapshot

    async def load_or_empty(self, source: str) -> CatalogSnapshot:
        """Startup variant of reload: failures are logged and leave an empty catalog."""
        try:
            return await self.reload(source)
        except CatalogLoadError as exc:
            logger.warning("catalog unavailable, starting with empty catalog: %s", exc)
            self._snapshot = CatalogSnapshot.empty()
            return self._snapshot


async def load_catalog(source: str, timeout: float = 15.0) -> CatalogSnapshot:
    """Purpose: Read a catalog source and parse it into a snapshot.
    Inputs/Outputs: Input is a filesystem path or http(s) URL; returns CatalogSnapshot.
    Side Effects / State: Reads a file or performs one HTTP GET.
    Dependencies: Uses httpx for URLs and parse_catalog_csv for the body.
    Failure Modes: Raises CatalogLoadError on IO, HTTP or parse failures.
    If Removed: The service cannot build its product catalog.
    Testing Notes: Missing files and unreachable URLs raise CatalogLoadError.
    """
    # Fetch raw bytes from disk or over HTTP.
    if source.startswith(("http://", "https://")):
        try:
            async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
                response = await client.get(source)
                response.raise_for_status()
                raw_bytes = response.content
        except httpx.HTTPError as exc:
            raise CatalogLoadError(f"cannot fetch catalog from {source}: {exc}") from exc
    else:
        try:
            raw_bytes = Path(source).read_bytes()
        except OSError as exc:
            raise CatalogLoadError(f"cannot read catalog file {source}: {exc}") from exc

    try:
        text = raw_bytes.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise CatalogLoadError(f"catalog {source} is not UTF-8: {exc}") from exc

    records = parse_catalog_csv(text)
    meta = CatalogMeta(
        source=source,
        loaded_at=datetime.now().isoformat(),
        sha256=hashlib.sha256(raw_bytes).hexdigest(),
    )
    logger.info("catalog parsed source=%s products=%d sha256=%s", source, len(records), meta.sha256[:12])
    return CatalogSnapshot(records=records, meta=meta)


def parse_catalog_csv(text: str) -> List[ProductRecord]:
    """Purpose: Parse comma-separated catalog text into ProductRecord objects.
    Inputs/Outputs: Input is decoded CSV text with a header row; output is records.
    Side Effects / State: None.
    Dependencies: Uses csv, map_header_columns and build_record.
    Failure Modes: Raises CatalogLoadError on CSV errors or a missing name column.
    If Removed: Catalog loading has no parser.
    Testing Notes: Thai and English headers map to the same fields; rows without
        a name are skipped.
    """
    # Parse rows strictly, then map recognized header synonyms to fields.
    try:
        rows = list(csv.reader(io.StringIO(text.lstrip("\ufeff")), strict=True))
    except csv.Error as exc:
        raise CatalogLoadError(f"malformed catalog CSV: {exc}") from exc
    rows = [row for row in rows if any(cell.strip() for cell in row)]
    if not rows:
        raise CatalogLoadError("catalog CSV is empty")

    columns = map_header_columns(rows[0])
    if "name" not in columns:
        raise CatalogLoadError(f"catalog header has no product name column: {rows[0]}")

    records: List[ProductRecord] = []
    for row in rows[1:]:
        record = build_record(row, columns)
        if record is not None:
            records.append(record)
    return records


def map_header_columns(header: Sequence[str]) -> Dict[str, int]:
    """Purpose: Map header cells to record fields using synonym lists.
    Inputs/Outputs: Input is the header row; output maps field name -> column index.
    Side Effects / State: None.
    Dependencies: Uses normalize_key and FIELD_KEYS.
    Failure Modes: Unknown headers are ignored.
    If Removed: Catalog columns cannot be recognized across languages.
    Testing Notes: "ชื่อสินค้า" maps to name and "ชื่อเรียก" maps to aliases.
    """
    # Exact synonym matches first, then containment for leftover headers.
    normalized = {index: normalize_key(cell) for index, cell in enumerate(header)}
    columns: Dict[str, int] = {}
    for field_name, keys in FIELD_KEYS:
        wanted = {normalize_key(key) for key in keys}
        for index, cell in normalized.items():
            if cell in wanted and index not in columns.values():
                columns[field_name] = index
                break
    for field_name, keys in FIELD_KEYS:
        if field_name in columns:
            continue
        for index, cell in normalized.items():
            if index in columns.values() or not cell:
                continue
            if any(normalize_key(key) in cell for key in keys):
                columns[field_name] = index
                break
    return columns


def build_record(row: Sequence[str], columns: Dict[str, int]) -> Optional[ProductRecord]:
    """Build one ProductRecord from a CSV row, or None when the row has no name."""
    def cell(field_name: str) -> str:
        index = columns.get(field_name)
        if index is None or index >= len(row):
            return ""
        return row[index].strip()

    name = cell("name")
    if not name:
        return None
    aliases = _split_multi(cell("aliases"))
    tags = _split_multi(cell("tags"))
    specification = cell("specification") or None
    bundle = _parse_number(cell("pcs_per_bundle"))
    code_match = CODE_RE.search(name)

    parts = [name, *sorted(aliases), *sorted(tags), specification or ""]
    search_key = " ".join(key for key in (normalize_key(part) for part in parts) if key)

    return ProductRecord(
        name=name,
        price=_parse_number(cell("price")),
        unit=cell("unit") or None,
        aliases=aliases,
        tags=tags,
        specification=specification,
        pcs_per_bundle=bundle if bundle and bundle > 0 else None,
        code=int(code_match.group(1)) if code_match else None,
        group=_group_key(name),
        search_key=search_key,
    )


def render_record_line(record: ProductRecord) -> str:
    """Purpose: Render a record as one descriptive line for the system prompt.
    Inputs/Outputs: Input is a ProductRecord; output is a single line of text.
    Side Effects / State: None.
    Dependencies: None.
    Failure Modes: Missing fields are omitted rather than printed as None.
    If Removed: The assistant model cannot see the catalog.
    Testing Notes: Price and bundle count appear when present.
    """
    # Join only the fields that carry data.
    parts = [record.name]
    if record.price is not None:
        price = f"{record.price:g}"
        parts.append(f"ราคา {price} บาท" + (f"/{record.unit}" if record.unit else ""))
    elif record.unit:
        parts.append(f"หน่วย {record.unit}")
    if record.aliases:
        parts.append("ชื่อเรียก: " + ", ".join(sorted(record.aliases)))
    if record.tags:
        parts.append("หมวด: " + ", ".join(sorted(record.tags)))
    if record.specification:
        parts.append(f"ขนาด/สเปค: {record.specification}")
    if record.pcs_per_bundle:
        unit = record.unit or "ชิ้น"
        parts.append(f"{record.pcs_per_bundle:g} {unit}/มัด")
    return "- " + " | ".join(parts)


def _split_multi(value: str) -> FrozenSet[str]:
    if not value:
        return frozenset()
    return frozenset(part.strip() for part in MULTI_VALUE_RE.split(value) if part.strip())


def _parse_number(value: str) -> Optional[float]:
    cleaned = PRICE_CLEAN_RE.sub("", value or "")
    if not cleaned:
        return None
    try:
        return float(cleaned)
    except ValueError:
        return None


def _group_key(name: str) -> Optional[str]:
    # First alphabetic token of the name; digits never form a group.
    for token in tokenize(name):
        if not is_numeric_token(token):
            return token
    return None
