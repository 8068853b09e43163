"""
Content Scanner
===============
Finds sensitive content on PDF pages.

Each text line is matched as one string (its words joined by single
spaces). A finding's bounding box is the union of the words its match
touches. Built-in detectors pair a fixed regex with a validator where one
exists; a match that fails its validator is dropped, not down-scored.

Findings come out lazily, page by page, in page order and then
content-stream order. Scanning the same document with the same ruleset
always yields the same sequence.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Callable, Iterator, Optional

from .document import Document, TextRun
from .errors import InvalidPattern
from .models import Category, Finding, FindingKind, RegionSource

logger = logging.getLogger(__name__)


# ─── Validators ───────────────────────────────────────────────────────────────


def luhn_check(num: str) -> bool:
    """Luhn algorithm for credit card validation."""
    digits = [int(d) for d in num if d.isdigit()]
    if len(digits) < 2:
        return False

    checksum = 0
    for i, d in enumerate(reversed(digits)):
        if i % 2 == 1:
            d *= 2
            if d > 9:
                d -= 9
        checksum += d
    return checksum % 10 == 0


def validate_ssn(ssn: str) -> bool:
    """
    Structural SSN check: area not 000, 666 or 9xx; group not 00;
    serial not 0000.
    """
    digits = re.sub(r"[^0-9]", "", ssn)
    if len(digits) != 9:
        return False
    area, group, serial = digits[:3], digits[3:5], digits[5:]
    if area in ("000", "666") or area.startswith("9"):
        return False
    return group != "00" and serial != "0000"


def validate_credit_card(cc: str) -> bool:
    """Issuer prefix + Luhn."""
    digits = re.sub(r"\D", "", cc)
    if len(digits) < 13 or len(digits) > 19:
        return False

    prefix2 = int(digits[:2])
    prefix3 = int(digits[:3])
    prefix4 = int(digits[:4])

    valid_prefix = (
        digits.startswith("4") or                    # Visa
        (51 <= prefix2 <= 55) or                     # Mastercard (classic)
        (2221 <= prefix4 <= 2720) or                 # Mastercard (new range)
        digits.startswith(("34", "37")) or           # Amex
        digits.startswith("6011") or                 # Discover
        digits.startswith("65") or                   # Discover
        (644 <= prefix3 <= 649) or                   # Discover
        digits.startswith("35") or                   # JCB
        (300 <= prefix3 <= 305) or                   # Diners Club Carte Blanche
        digits.startswith(("36", "38", "39"))        # Diners Club International
    )
    return valid_prefix and luhn_check(digits)


def validate_iban(iban: str) -> bool:
    """Mod-97 check."""
    iban = iban.upper().replace(" ", "")
    if len(iban) < 15 or len(iban) > 34:
        return False

    rearranged = iban[4:] + iban[:4]
    numeric = ""
    for c in rearranged:
        if c.isdigit():
            numeric += c
        elif c.isalpha():
            numeric += str(ord(c) - ord("A") + 10)
        else:
            return False
    return int(numeric) % 97 == 1


def within_one_edit(a: str, b: str) -> bool:
    """True when Levenshtein(a, b) <= 1."""
    if a == b:
        return True
    la, lb = len(a), len(b)
    if abs(la - lb) > 1:
        return False
    if la > lb:
        a, b, la, lb = b, a, lb, la
    i = j = 0
    edited = False
    while i < la and j < lb:
        if a[i] == b[j]:
            i += 1
            j += 1
            continue
        if edited:
            return False
        edited = True
        if la == lb:
            i += 1
        j += 1
    return True


# ─── Rules ────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Rule:
    """One detector: regex, optional validator, reported capture group."""
    category: Category
    pattern: re.Pattern
    confidence: int
    validator: Optional[Callable[[str], bool]] = None
    group: int = 0


_ID_LABEL = r"\s*(?:no\.?|number|#)?\s*:?\s*"

BUILTIN_RULES: dict[Category, list[Rule]] = {
    Category.SSN: [
        Rule(Category.SSN,
             re.compile(r"(?<![\d-])\d{3}[- ]\d{2}[- ]\d{4}(?![\d-])"),
             97, validate_ssn),
    ],
    Category.CREDIT_CARD: [
        Rule(Category.CREDIT_CARD,
             re.compile(r"(?<![\d-])(?:\d[ -]?){12,18}\d(?![\d-])"),
             100, validate_credit_card),
    ],
    Category.BANK_ACCOUNT: [
        Rule(Category.BANK_ACCOUNT,
             re.compile(r"\b[A-Z]{2}\d{2}(?: ?[A-Z0-9]){11,30}\b"),
             98, validate_iban),
        Rule(Category.BANK_ACCOUNT,
             re.compile(r"(?i)\b(?:account|acct)\.?" + _ID_LABEL + r"(\d{8,17})\b"),
             70, group=1),
    ],
    Category.EMAIL: [
        Rule(Category.EMAIL,
             re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
             90),
    ],
    Category.PHONE_NUMBER: [
        Rule(Category.PHONE_NUMBER,
             re.compile(r"(?<![\d-])(?:\+?1[ .-]?)?\(?\d{3}\)?[ .-]?\d{3}[ .-]\d{4}(?![\d-])"),
             80),
        Rule(Category.PHONE_NUMBER,
             re.compile(r"(?<![\w+])\+\d{1,3}(?:[ .-]?\d{2,4}){2,4}(?!\d)"),
             80),
    ],
    Category.ADDRESS: [
        Rule(Category.ADDRESS,
             re.compile(
                 r"\b\d{1,5}\s+(?:[A-Z][a-z]+\s+){1,3}"
                 r"(?:Street|St|Avenue|Ave|Road|Rd|Boulevard|Blvd|Lane|Ln|Drive|Dr|"
                 r"Court|Ct|Way|Place|Pl|Terrace|Circle|Parkway|Pkwy)\b\.?"
             ),
             75),
    ],
    Category.PASSPORT: [
        Rule(Category.PASSPORT,
             re.compile(r"(?i)\bpassport" + _ID_LABEL + r"((?=[A-Z]*\d)[A-Z0-9]{6,9})\b"),
             75, group=1),
    ],
    Category.DRIVER_LICENSE: [
        Rule(Category.DRIVER_LICENSE,
             re.compile(
                 r"(?i)\b(?:DL|driver'?s?\s+licen[cs]e)" + _ID_LABEL
                 + r"((?=[A-Z-]*\d)[A-Z0-9-]{5,15})\b"
             ),
             75, group=1),
    ],
}

KEYWORD_CONFIDENCE = 100
FUZZY_CONFIDENCE = 60
CUSTOM_CONFIDENCE = 75
IMAGE_CONFIDENCE = 100


def compile_custom_pattern(pattern: str) -> re.Pattern:
    """Compile a user regex. Raises InvalidPattern."""
    if not pattern:
        raise InvalidPattern("Custom pattern is empty")
    try:
        compiled = re.compile(pattern)
    except re.error as e:
        raise InvalidPattern(
            f"Invalid custom pattern {pattern!r}: {e}",
            detail={"pattern": pattern},
        ) from e
    if compiled.search("") is not None:
        raise InvalidPattern(
            f"Custom pattern {pattern!r} matches the empty string",
            detail={"pattern": pattern},
        )
    return compiled


def keyword_pattern(keyword: str, case_sensitive: bool) -> re.Pattern:
    """
    Single words match as substrings; phrases match only on the exact
    token sequence.
    """
    flags = 0 if case_sensitive else re.IGNORECASE
    tokens = keyword.split()
    if len(tokens) == 1:
        return re.compile(re.escape(tokens[0]), flags)
    body = r"\s+".join(re.escape(t) for t in tokens)
    return re.compile(r"(?<!\S)" + body + r"(?!\S)", flags)


@dataclass
class Ruleset:
    """Compiled detection rules. Build once at submission, reuse per scan."""
    rules: list[Rule] = field(default_factory=list)
    keywords: list[str] = field(default_factory=list)
    case_sensitive: bool = False
    fuzzy_keywords: bool = False
    include_images: bool = False

    @classmethod
    def build(
        cls,
        categories=(),
        keywords=(),
        custom_patterns=(),
        case_sensitive: bool = False,
        fuzzy_keywords: bool = False,
        include_images: bool = False,
    ) -> "Ruleset":
        rules: list[Rule] = []
        for category in sorted(set(categories), key=lambda c: c.value):
            rules.extend(BUILTIN_RULES.get(category, []))
        for pattern in custom_patterns:
            rules.append(Rule(
                Category.CUSTOM,
                compile_custom_pattern(pattern),
                CUSTOM_CONFIDENCE,
            ))
        keywords = [k.strip() for k in keywords if k and k.strip()]
        for keyword in keywords:
            rules.append(Rule(
                Category.KEYWORD,
                keyword_pattern(keyword, case_sensitive),
                KEYWORD_CONFIDENCE,
            ))
        return cls(
            rules=rules,
            keywords=keywords,
            case_sensitive=case_sensitive,
            fuzzy_keywords=fuzzy_keywords,
            include_images=include_images,
        )

    @classmethod
    def from_settings(cls, settings) -> "Ruleset":
        """Build from RedactSettings. Custom patterns are always validated."""
        mode = settings.redaction_mode
        custom = list(settings.custom_patterns)
        for pattern in custom:
            compile_custom_pattern(pattern)

        if mode == "manual":
            return cls()
        if mode == "keyword":
            return cls.build(
                keywords=settings.keywords,
                case_sensitive=settings.case_sensitive,
                fuzzy_keywords=settings.fuzzy_keywords,
                include_images=settings.redact_images,
            )
        if mode == "pattern":
            return cls.build(
                custom_patterns=custom,
                include_images=settings.redact_images,
            )
        use_custom = settings.auto_detection_types.custom
        return cls.build(
            categories=settings.auto_detection_types.enabled(),
            keywords=settings.keywords,
            custom_patterns=custom if use_custom else (),
            case_sensitive=settings.case_sensitive,
            fuzzy_keywords=settings.fuzzy_keywords,
            include_images=settings.redact_images,
        )

    @property
    def is_empty(self) -> bool:
        return not self.rules and not self.include_images

    def source_for(self, category: Optional[Category]) -> RegionSource:
        if category == Category.KEYWORD:
            return RegionSource.KEYWORD
        if category == Category.CUSTOM:
            return RegionSource.PATTERN
        return RegionSource.AUTO


# ─── Scanning ─────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class _Match:
    start: int
    end: int
    category: Category
    confidence: int


def _match_run(run: TextRun, ruleset: Ruleset) -> list[_Match]:
    candidates: list[_Match] = []
    for rule in ruleset.rules:
        for m in rule.pattern.finditer(run.text):
            start, end = m.span(rule.group)
            if start < 0 or end <= start:
                continue
            if rule.validator and not rule.validator(m.group(rule.group)):
                continue
            candidates.append(_Match(start, end, rule.category, rule.confidence))

    if ruleset.fuzzy_keywords:
        candidates.extend(_fuzzy_matches(run, ruleset))

    # Overlapping matches: the more confident (then longer) one wins
    candidates.sort(key=lambda c: (-c.confidence, -(c.end - c.start), c.start))
    kept: list[_Match] = []
    for cand in candidates:
        if any(cand.start < k.end and k.start < cand.end for k in kept):
            continue
        kept.append(cand)
    kept.sort(key=lambda c: c.start)
    return kept


def _fuzzy_matches(run: TextRun, ruleset: Ruleset) -> list[_Match]:
    targets = [k for k in ruleset.keywords if " " not in k and len(k) >= 4]
    if not ruleset.case_sensitive:
        targets = [k.lower() for k in targets]
    matches = []
    for word, offset in zip(run.words, run.offsets):
        token = word.text.strip(".,;:!?()[]{}\"'")
        if not token:
            continue
        lead = word.text.index(token)
        needle = token if ruleset.case_sensitive else token.lower()
        if any(needle != t and within_one_edit(needle, t) for t in targets):
            start = offset + lead
            matches.append(_Match(start, start + len(token), Category.KEYWORD, FUZZY_CONFIDENCE))
    return matches


def scan_page(doc: Document, number: int, ruleset: Ruleset) -> list[Finding]:
    """All findings on one page, in content-stream order."""
    findings: list[Finding] = []
    if ruleset.rules or ruleset.fuzzy_keywords:
        for run in doc.extract_text(number):
            for match in _match_run(run, ruleset):
                findings.append(Finding(
                    page=number,
                    kind=FindingKind.TEXT,
                    bbox=run.span_bbox(match.start, match.end),
                    content=run.text[match.start:match.end],
                    category=match.category,
                    confidence=match.confidence,
                ))

    if ruleset.include_images:
        for image in doc.extract_images(number):
            findings.append(Finding(
                page=number,
                kind=FindingKind.IMAGE,
                bbox=image.bbox,
                content=f"image:{image.xref}",
                category=Category.IMAGE,
                confidence=IMAGE_CONFIDENCE,
            ))
    return findings


def scan(
    doc: Document,
    ruleset: Ruleset,
    checkpoint: Optional[Callable[[], None]] = None,
    pages: Optional[list[int]] = None,
) -> Iterator[Finding]:
    """
    Lazily yield findings in page order.

    ``checkpoint`` is called before each page; it raises to abort the scan.
    """
    numbers = pages or range(1, doc.page_count + 1)
    for number in numbers:
        if checkpoint:
            checkpoint()
        page_findings = scan_page(doc, number, ruleset)
        if page_findings:
            logger.debug(f"Page {number}: {len(page_findings)} findings")
        yield from page_findings
