"""Barcode interpretation and identifier variant generation.

Vendors index the same product under different symbologies (EAN-13, UPC-A,
EAN-8, ISBN) and sometimes without the check digit. A canonical EAN-13 is
expanded into every form a vendor search might match.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

_DIGITS = re.compile(r"^\d+$")


@dataclass(frozen=True)
class BarcodeVariant:
    """One interpretation of a scanned code."""

    barcode: str
    barcode_type: str


def gtin_check_digit(body: str) -> str:
    """Compute the GS1 mod-10 check digit for a GTIN body.

    Example:
        >>> gtin_check_digit("750123456789")
        '3'
    """
    total = 0
    for position, char in enumerate(reversed(body)):
        total += int(char) * (3 if position % 2 == 0 else 1)
    return str((10 - total % 10) % 10)


def gtin_generate(body: str) -> str:
    return body + gtin_check_digit(body)


def gtin_validate(code: str) -> bool:
    if len(code) < 8 or not _DIGITS.match(code):
        return False
    return gtin_check_digit(code[:-1]) == code[-1]


def isbn10_check_digit(body: str) -> str:
    total = sum(int(char) * weight for char, weight in zip(body, range(10, 1, -1)))
    check = (11 - total % 11) % 11
    return "X" if check == 10 else str(check)


def isbn10_generate(body: str) -> str:
    return body + isbn10_check_digit(body)


def isbn10_validate(code: str) -> bool:
    if not re.match(r"^\d{9}[\dX]$", code):
        return False
    return isbn10_check_digit(code[:9]) == code[9]


class _VariantSet:
    """Ordered, de-duplicated collection of variants."""

    def __init__(self) -> None:
        self.items: list[BarcodeVariant] = []
        self._seen: set[str] = set()

    def add(self, code: str, barcode_type: str) -> None:
        if code not in self._seen:
            self._seen.add(code)
            self.items.append(BarcodeVariant(code, barcode_type))

    def __contains__(self, code: str) -> bool:
        return code in self._seen

    def first(self, *types: str) -> BarcodeVariant | None:
        for barcode_type in types:
            for item in self.items:
                if item.barcode_type == barcode_type:
                    return item
        return None


def barcode_types(barcode: str | None) -> list[BarcodeVariant]:
    """Return the possible interpretations of a scanned code.

    Short codes are completed with their check digit; whenever any valid
    interpretation exists an EAN-13 (or ISBN-13) form is guaranteed, followed
    by the UPC-A / ISBN-10 / EAN-8 forms derivable from it.
    """
    if not barcode:
        return [BarcodeVariant(barcode or "", "undefined")]

    code = barcode.strip().upper()
    found = _VariantSet()
    length = len(code)
    numeric = bool(_DIGITS.match(code))

    if numeric and length == 7:
        found.add(gtin_generate(code), "EAN_8")
    if numeric and length == 8 and gtin_validate(code):
        found.add(code, "EAN_8")
    if numeric and length == 9:
        found.add(isbn10_generate(code), "ISBN_10")
    if length == 10 and isbn10_validate(code):
        found.add(code, "ISBN_10")
    if numeric and length == 10:
        found.add(gtin_generate("0" + code), "UPC_A")
    if numeric and length == 11:
        found.add(gtin_generate(code), "UPC_A")
    if numeric and length == 12:
        if gtin_validate(code):
            found.add(code, "UPC_A")
        if code.startswith("0"):
            found.add(gtin_generate(code[1:]), "UPC_A")
        # 12 digits may also be an EAN-13 missing its check digit
        found.add(gtin_generate(code), "EAN_13")
    if numeric and length == 13 and gtin_validate(code):
        found.add(code, "ISBN_13" if code.startswith(("978", "979")) else "EAN_13")

    if not found.items:
        return [BarcodeVariant(code, "undefined")]

    if code not in found:
        found.add(code, "undefined")

    ean13 = found.first("EAN_13", "ISBN_13")
    if ean13 is None:
        candidate = found.first("ISBN_10", "UPC_A", "EAN_8")
        if candidate is not None:
            if candidate.barcode_type == "ISBN_10":
                core12 = "978" + candidate.barcode[:9]
            elif candidate.barcode_type == "UPC_A":
                core12 = "0" + candidate.barcode[:11]
            else:
                core12 = "00000" + candidate.barcode[:7]
            found.add(gtin_generate(core12), "EAN_13")
            ean13 = found.first("EAN_13")

    if ean13 is not None:
        ean = ean13.barcode
        if ean.startswith("0"):
            found.add(gtin_generate(ean[1:12]), "UPC_A")
        if ean.startswith(("978", "979")):
            found.add(isbn10_generate(ean[3:12]), "ISBN_10")
        if ean.startswith("00000"):
            found.add(gtin_generate(ean[5:12]), "EAN_8")

    return found.items


def generate_variations(ean13: str | None) -> list[BarcodeVariant]:
    """Expand a valid EAN-13 into vendor search variants.

    Returns an empty list for anything that is not a valid EAN-13.
    """
    if not ean13 or len(ean13) != 13 or not gtin_validate(ean13):
        return []

    variants = [
        BarcodeVariant(ean13, "EAN_13"),
        BarcodeVariant(ean13[:12], "EAN_13_noCD"),
    ]

    if ean13.startswith("0"):
        upc_core = ean13[1:12]
        variants.append(BarcodeVariant(gtin_generate(upc_core), "UPC_A"))
        variants.append(BarcodeVariant(upc_core, "UPC_A_noCD"))

    if ean13.startswith(("978", "979")):
        isbn_core = ean13[3:12]
        variants.append(BarcodeVariant(isbn10_generate(isbn_core), "ISBN_10"))
        variants.append(BarcodeVariant(isbn_core, "ISBN_10_noCD"))

    if ean13.startswith("00000"):
        ean8_core = ean13[5:12]
        variants.append(BarcodeVariant(gtin_generate(ean8_core), "EAN_8"))
        variants.append(BarcodeVariant(ean8_core, "EAN_8_noCD"))

    return variants


def identifier_variants(code: str) -> list[str]:
    """Search identifiers for a record, canonical form first."""
    interpretations = barcode_types(code)
    ean13 = next(
        (v.barcode for v in interpretations if v.barcode_type in ("EAN_13", "ISBN_13")),
        None,
    )
    ordered: list[str] = []
    for variant in generate_variations(ean13) if ean13 else interpretations:
        if variant.barcode and variant.barcode not in ordered:
            ordered.append(variant.barcode)
    return ordered
