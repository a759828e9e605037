"""Company name normalization and fuzzy comparison helpers.

Bank statement text is noisy ("PAYPAL *NETFLIX.COM 1234567"); these helpers
reduce it to something comparable with the partner names on file.
"""

import fnmatch
import re

from rapidfuzz.distance import Levenshtein

# Legal-form suffixes stripped before comparing company names
COMPANY_SUFFIXES = [
    # German/Austrian
    r"\s*gmbh\s*$",
    r"\s*g\.m\.b\.h\.\s*$",
    r"\s*ges\.?m\.?b\.?h\.?\s*$",
    r"\s*ag\s*$",
    r"\s*kg\s*$",
    r"\s*ohg\s*$",
    r"\s*og\s*$",
    r"\s*e\.?u\.?\s*$",
    r"\s*einzelunternehmen\s*$",
    r"\s*&\s*co\.?\s*(kg|ohg)?\s*$",
    r"\s*mbh\s*$",
    # English
    r"\s*ltd\.?\s*$",
    r"\s*limited\s*$",
    r"\s*inc\.?\s*$",
    r"\s*incorporated\s*$",
    r"\s*corp\.?\s*$",
    r"\s*corporation\s*$",
    r"\s*llc\s*$",
    r"\s*llp\s*$",
    r"\s*plc\s*$",
    r"\s*co\.?\s*$",
    r"\s*company\s*$",
    # French / Italian / Spanish / Dutch
    r"\s*s\.?a\.?r\.?l\.?\s*$",
    r"\s*sarl\s*$",
    r"\s*s\.?a\.?s\.?\s*$",
    r"\s*s\.?a\.?\s*$",
    r"\s*s\.?r\.?l\.?\s*$",
    r"\s*s\.?p\.?a\.?\s*$",
    r"\s*s\.?l\.?\s*$",
    r"\s*b\.?v\.?\s*$",
    r"\s*n\.?v\.?\s*$",
]

_UMLAUTS = str.maketrans({"ä": "ae", "ö": "oe", "ü": "ue", "ß": "ss"})


def clean_text(text: str) -> str:
    """Strip payment-processor prefixes, TLDs, legal forms and reference digits.

    "PAYPAL *NETFLIX.COM" -> "NETFLIX", "Austrian2572165066551" -> "Austrian".
    Case is preserved.
    """
    if not text:
        return ""
    result = re.sub(r"^(pp\*|sq\*|paypal\s*\*|ec\s+|sepa\s+|lastschrift\s+)", "", text, flags=re.I)
    result = re.sub(r"\.(com|de|at|ch|eu|net|org|io)(/.*)?$", "", result, flags=re.I)
    result = re.sub(
        r"\s+(gmbh|ag|inc|llc|ltd|sagt danke|marketplace|lastschrift|gutschrift|ab|bv|nv|ug).*$",
        "",
        result,
        flags=re.I,
    )
    result = re.sub(r"\s+\d{4,}.*$", "", result)
    result = re.sub(r"\d{6,}\*+\d+", "", result)
    result = re.sub(r"\*{3,}", "", result)
    result = re.sub(r"([a-zA-Z]{3,})\d{6,}", r"\1", result)
    return re.sub(r"\s+", " ", result).strip()


def normalize_company_name(name: str | None) -> str:
    """Lowercase, drop legal-form suffixes and punctuation, fold umlauts."""
    if not name:
        return ""
    normalized = name.lower().strip()
    for suffix in COMPANY_SUFFIXES:
        normalized = re.sub(suffix, "", normalized)
    normalized = re.sub(r"[^a-z0-9äöüß\s]", " ", normalized)
    normalized = normalized.translate(_UMLAUTS)
    return re.sub(r"\s+", " ", normalized).strip()


def names_overlap(name1: str | None, name2: str | None) -> bool:
    """True if one normalized name equals or contains the other."""
    n1 = normalize_company_name(name1)
    n2 = normalize_company_name(name2)
    if not n1 or not n2:
        return False
    return n1 in n2 or n2 in n1


def company_similarity(name1: str | None, name2: str | None) -> int:
    """Levenshtein similarity of normalized names, 0-100."""
    n1 = normalize_company_name(name1)
    n2 = normalize_company_name(name2)
    if not n1 or not n2:
        return 0
    if n1 == n2:
        return 100
    return round(Levenshtein.normalized_similarity(n1, n2) * 100)


def glob_match(pattern: str, text: str | None) -> bool:
    """Case-insensitive glob match ("*netflix*") against free text."""
    if not pattern or not text:
        return False
    return fnmatch.fnmatchcase(text.lower().strip(), pattern.lower().strip())


def vat_ids_match(vat1: str | None, vat2: str | None) -> bool:
    """Compare VAT IDs ignoring case, spaces and punctuation."""
    if not vat1 or not vat2:
        return False
    return _compact(vat1) == _compact(vat2)


def normalize_iban(iban: str | None) -> str:
    return _compact(iban or "")


def _compact(value: str) -> str:
    return re.sub(r"[^A-Z0-9]", "", value.upper())
