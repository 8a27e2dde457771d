"""Product catalog loaded from a CSV price list.

Holds the in-memory index used to render the catalog into the system prompt,
to list every variant of a product category, and to work out which product
group a customer message is about.
"""

import csv
import re
import unicodedata
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional

from shopchat.logging_config import get_logger

logger = get_logger("catalog_service")

NAME_HEADERS = {"name", "product", "title", "product_name", "สินค้า", "รายการ"}
PRICE_HEADERS = {"price", "amount", "cost", "ราคา"}
UNIT_HEADERS = {"unit", "หน่วย", "ยูนิต"}
GROUP_HEADERS = {"group", "category", "หมวด", "หมวดหมู่"}

PRICE_MISSING_TEXT = "กรุณาโทร 088-277-0145"

_PUNCTUATION_RE = re.compile(r"[.,;:!?'\"“”‘’(){}\[\]<>|/\\\-_=+]")
_TOKEN_RE = re.compile(r"#?\d+|[a-zก-๙]+")
_GROUP_TRIM_RE = re.compile(r"[\d#.,\-\s]+$")


def normalize_name(text: str) -> str:
    """Casefold, NFKC, drop whitespace and punctuation."""
    normalized = unicodedata.normalize("NFKC", (text or "").lower())
    normalized = re.sub(r"\s+", "", normalized)
    return _PUNCTUATION_RE.sub("", normalized)


def tokenize(text: str) -> List[str]:
    return _TOKEN_RE.findall(unicodedata.normalize("NFKC", (text or "").lower()))


def _parse_price(raw: str) -> Optional[float]:
    digits = re.sub(r"[^\d.]", "", raw or "")
    if not digits:
        return None
    try:
        return float(digits)
    except ValueError:
        return None


def derive_group(name: str) -> str:
    """First word of the product name with any trailing size/code stripped."""
    head = (name or "").strip().split()
    if not head:
        return ""
    return _GROUP_TRIM_RE.sub("", head[0]) or head[0]


@dataclass
class Product:
    name: str
    price: Optional[float]
    unit: str
    group: str
    norm_name: str = field(init=False, default="")

    def __post_init__(self) -> None:
        self.norm_name = normalize_name(self.name)

    def price_text(self) -> str:
        if self.price is None:
            return PRICE_MISSING_TEXT
        price = int(self.price) if float(self.price).is_integer() else self.price
        return f"{price} บาท"

    def format_line(self) -> str:
        unit = f" ต่อ {self.unit}" if self.unit else ""
        return f"• {self.name} ราคา {self.price_text()}{unit}"


def _find_column(header: List[str], names: set[str]) -> int:
    for index, title in enumerate(header):
        if title in names:
            return index
    return -1


class Catalog:
    def __init__(self, products: Iterable[Product] = ()):
        self.products: List[Product] = list(products)
        groups = {normalize_name(p.group) for p in self.products if p.group}
        # Longest first so "ฉากริมสังกะสี" wins over "ฉาก".
        self._groups = sorted((g for g in groups if g), key=len, reverse=True)

    def __len__(self) -> int:
        return len(self.products)

    @classmethod
    def from_rows(cls, rows: List[List[str]]) -> "Catalog":
        if not rows:
            return cls()
        header = [title.strip().lower() for title in rows[0]]
        name_idx = _find_column(header, NAME_HEADERS)
        price_idx = _find_column(header, PRICE_HEADERS)
        unit_idx = _find_column(header, UNIT_HEADERS)
        group_idx = _find_column(header, GROUP_HEADERS)

        def cell(row: List[str], index: int, default: int) -> str:
            index = index if index != -1 else default
            if index < 0 or index >= len(row):
                return ""
            return (row[index] or "").strip()

        products = []
        for row in rows[1:]:
            name = cell(row, name_idx, 0)
            if not name:
                continue
            group = cell(row, group_idx, -1) or derive_group(name)
            products.append(
                Product(
                    name=name,
                    price=_parse_price(cell(row, price_idx, 1)),
                    unit=cell(row, unit_idx, 2),
                    group=group,
                )
            )
        return cls(products)

    @classmethod
    def load(cls, path: str | Path) -> "Catalog":
        with open(path, encoding="utf-8-sig", newline="") as handle:
            rows = list(csv.reader(handle))
        catalog = cls.from_rows(rows)
        logger.info(f"Loaded {len(catalog)} products from {path}")
        return catalog

    def list_by_term(self, term: str) -> List[Product]:
        normalized = normalize_name(term)
        matches = [p for p in self.products if normalized and normalized in p.norm_name]
        return sorted(matches, key=lambda p: p.name)

    def resolve_group(self, text: str) -> Optional[str]:
        """Normalized product group named in `text`, or None when ambiguous/absent."""
        normalized = normalize_name(text)
        if not normalized:
            return None
        for group in self._groups:
            if group in normalized:
                return group
        return None

    def render(self) -> str:
        lines = []
        for product in self.products:
            unit = f" ต่อ {product.unit}" if product.unit else ""
            lines.append(f"{product.name} = {product.price_text()}{unit}")
        return "\n".join(lines)
