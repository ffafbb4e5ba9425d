"""
Printer-name normalization and conflict detection for print profiles.

Two profiles in one version conflict when their printer names normalize to
the same string. Matching is exact on the normalized form, not fuzzy:
"X1 Carbon" and "X1C" are different printers.
"""

import re
from typing import Iterable, Protocol, TypeVar

# Vendor prefixes slicers add inconsistently ("Bambu Lab X1 Carbon" vs
# "X1 Carbon"). Longer phrases first so "bambu lab" wins over "bambu".
VENDOR_NOISE: list[str] = [
    "bambu lab",
    "bambulab",
    "bambu",
    "bbl",
    "prusa research",
    "original prusa",
    "prusa",
    "creality",
    "elegoo",
    "anycubic",
    "qidi tech",
    "orcaslicer",
]

_VENDOR_RE = re.compile(
    r"\b(?:"
    + "|".join(r"\s*".join(re.escape(w) for w in v.split()) for v in VENDOR_NOISE)
    + r")\b"
)
_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")


class HasPrinterName(Protocol):
    printer_name: str


P = TypeVar("P", bound=HasPrinterName)


def _collapse(text: str) -> str:
    return _NON_ALNUM_RE.sub("", text)


def normalize_printer_name(name: str) -> str:
    """Case-fold, drop vendor noise and everything that isn't a letter or digit.

    If the name is nothing but a vendor ("Bambu Lab"), the vendor is kept.
    """
    folded = name.casefold().strip()
    stripped = _collapse(_VENDOR_RE.sub(" ", folded))
    return stripped or _collapse(folded)


def is_conflict(name_a: str, name_b: str) -> bool:
    return normalize_printer_name(name_a) == normalize_printer_name(name_b)


def find_conflict(name: str, existing: Iterable[P]) -> P | None:
    """First profile in ``existing`` whose printer name conflicts with ``name``."""
    target = normalize_printer_name(name)
    for profile in existing:
        if normalize_printer_name(profile.printer_name) == target:
            return profile
    return None


def disambiguate(name: str, existing_names: Iterable[str]) -> str:
    """Suffix ``name`` with `` (2)``, `` (3)``... until no existing name conflicts."""
    taken = {normalize_printer_name(n) for n in existing_names}
    if normalize_printer_name(name) not in taken:
        return name
    counter = 2
    while True:
        candidate = f"{name} ({counter})"
        if normalize_printer_name(candidate) not in taken:
            return candidate
        counter += 1
