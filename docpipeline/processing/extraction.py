"""
Category-specific structured field extraction.

Rule-based first pass over OCR / parser text. Each category declares the
keywords that identify it and the fields an emissions report needs from it;
completeness is the share of required fields found. Incomplete results are
handed to the generative post-processor.

Keyword lists cover the Russian document types the service receives
(путевой лист, счёт за электроэнергию, акт утилизации, ...) plus English
equivalents.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Callable

from docpipeline.schemas.documents import DocumentCategory

_FLAGS = re.IGNORECASE | re.UNICODE

_NUMBER = r"(\d[\d \u00a0]*(?:[.,]\d+)?)"

# kg CO2 per litre: t CO2 / t fuel × density (kg/l)
FUEL_EMISSION_FACTORS: dict[str, float] = {
    "gasoline": 2.31 * 0.75,
    "diesel":   2.67 * 0.84,
}


@dataclass(frozen=True)
class CategoryPattern:
    keywords:        tuple[str, ...]
    required_fields: tuple[str, ...]


CATEGORY_PATTERNS: dict[DocumentCategory, CategoryPattern] = {
    DocumentCategory.TRANSPORT: CategoryPattern(
        keywords=(
            "путевой лист", "маршрут", "пробег", "расход топлива", "транспортная накладная",
            "waybill", "route", "mileage", "fuel consumption",
        ),
        required_fields=("route", "distance_km", "fuel_consumption_liters", "vehicle_type"),
    ),
    DocumentCategory.ENERGY: CategoryPattern(
        keywords=(
            "электроэнергия", "квт*ч", "квт·ч", "энергосбыт", "теплоэнергия", "гкал",
            "газоснабжение", "природный газ", "electricity", "kwh", "heating",
        ),
        required_fields=("consumption", "consumption_unit", "total_cost"),
    ),
    DocumentCategory.PRODUCTION: CategoryPattern(
        keywords=(
            "производство", "выпуск", "изготовление", "тонн продукции",
            "production report", "output volume",
        ),
        required_fields=("production_volume", "production_unit"),
    ),
    DocumentCategory.WASTE: CategoryPattern(
        keywords=(
            "утилизация", "отходы", "захоронение", "класс опасности",
            "waste", "landfill", "disposal",
        ),
        required_fields=("waste_weight", "waste_unit", "disposal_method"),
    ),
    DocumentCategory.SUPPLIERS: CategoryPattern(
        keywords=(
            "счет-фактура", "счёт-фактура", "поставка", "поставщик", "материалы", "сырье",
            "invoice", "supplier",
        ),
        required_fields=("supplier_inn", "quantity", "total_amount"),
    ),
    DocumentCategory.OTHER: CategoryPattern(keywords=(), required_fields=()),
}


# ---------------------------------------------------------------------------
# Result type
# ---------------------------------------------------------------------------

@dataclass
class FieldExtraction:
    category: DocumentCategory
    fields:   dict[str, Any] = field(default_factory=dict)

    @property
    def required(self) -> tuple[str, ...]:
        return CATEGORY_PATTERNS[self.category].required_fields

    @property
    def missing(self) -> list[str]:
        return [name for name in self.required if self.fields.get(name) in (None, "")]

    @property
    def completeness(self) -> float:
        if not self.required:
            return 1.0
        return round(1 - len(self.missing) / len(self.required), 3)

    @property
    def is_complete(self) -> bool:
        return not self.missing


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def parse_number(raw: str | None) -> float | None:
    """'1 234,56' → 1234.56"""
    if raw is None:
        return None
    cleaned = re.sub(r"[\s\u00a0]", "", raw).replace(",", ".")
    try:
        return float(cleaned)
    except ValueError:
        return None


def _search(pattern: str, text: str, group: int = 1) -> str | None:
    match = re.search(pattern, text, _FLAGS)
    return match.group(group).strip() if match else None


def _search_number(pattern: str, text: str) -> float | None:
    return parse_number(_search(pattern, text))


def normalize_fuel_type(raw: str | None) -> str | None:
    if not raw:
        return None
    value = raw.lower()
    if value.startswith(("аи", "бензин", "gasoline", "petrol")):
        return "gasoline"
    if value.startswith(("дт", "дизел", "diesel")):
        return "diesel"
    if value.startswith(("пропан", "метан", "газ", "lpg", "cng")):
        return "gas"
    return value


# ---------------------------------------------------------------------------
# Per-category extractors
# ---------------------------------------------------------------------------

def _extract_transport(text: str) -> dict[str, Any]:
    fields: dict[str, Any] = {}

    route = _search(r"(?:маршрут|route)\s*[:\-]?\s*([^\n]{3,120})", text)
    if route is None:
        match = re.search(r"(?:из|from)\s+([^\n,]{2,40}?)\s+(?:в|до|to)\s+([^\n,]{2,40})", text, _FLAGS)
        if match:
            route = f"{match.group(1).strip()} — {match.group(2).strip()}"
    fields["route"] = route

    fields["distance_km"] = (
        _search_number(r"(?:пробег|расстояние|distance|mileage)\D{0,20}" + _NUMBER + r"\s*(?:км|km)", text)
        or _search_number(_NUMBER + r"\s*(?:км|km)\b", text)
    )
    fields["fuel_consumption_liters"] = _search_number(
        r"(?:расход\s+топлива|израсходовано|заправлено|fuel\s+(?:consumption|used))\D{0,20}"
        + _NUMBER + r"\s*(?:л\b|литр|l\b|liter|litre)",
        text,
    )
    fields["fuel_type"] = normalize_fuel_type(
        _search(r"\b(аи-?\s?(?:92|95|98|100)|дт|дизел\w*|бензин\w*|diesel|gasoline|petrol|пропан|метан)\b", text)
    )
    fields["vehicle_type"] = _search(
        r"(?:марка\s+автомобиля|автомобиль|транспортное\s+средство|vehicle|truck)\s*[:\-]?\s*([^\n]{2,40})",
        text,
    )
    fields["license_plate"] = _search(r"\b([А-ЯЁ]\s?\d{3}\s?[А-ЯЁ]{2}\s?\d{2,3})\b", text)
    cargo = re.search(
        r"(?:масса|вес|груз|брутто|нетто|cargo|weight)\D{0,10}" + _NUMBER + r"\s*(т|тонн|кг|kg|t)\b",
        text, _FLAGS,
    )
    if cargo:
        fields["cargo_weight"] = parse_number(cargo.group(1))
        fields["cargo_unit"] = "kg" if cargo.group(2).lower() in ("кг", "kg") else "t"
    return fields


def _extract_energy(text: str) -> dict[str, Any]:
    fields: dict[str, Any] = {}
    units = (
        ("kWh",  r"\s*(?:квт\s*[*·⋅]?\s*ч|kwh)"),
        ("Gcal", r"\s*(?:гкал|gcal)"),
        ("m3",   r"\s*(?:м3|м³|куб\.?\s*м|m3)"),
    )
    for unit, suffix in units:
        value = _search_number(_NUMBER + suffix, text)
        if value is not None:
            fields["consumption"] = value
            fields["consumption_unit"] = unit
            break
    fields["total_cost"] = _search_number(
        r"(?:итого|всего\s+к\s+оплате|к\s+оплате|сумма|total)\D{0,20}" + _NUMBER, text
    )
    fields["tariff_rate"] = _search_number(r"(?:тариф|tariff|rate)\D{0,20}" + _NUMBER, text)
    return fields


def _extract_production(text: str) -> dict[str, Any]:
    fields: dict[str, Any] = {}
    match = re.search(
        r"(?:выпуск|произведено|объем\s+производства|production(?:\s+volume)?|output)\D{0,20}"
        + _NUMBER + r"\s*(т|тонн\w*|шт|ед\w*|units?|tons?|t)\b",
        text, _FLAGS,
    )
    if match:
        fields["production_volume"] = parse_number(match.group(1))
        fields["production_unit"] = match.group(2).lower()
    fields["period"] = _search(r"(?:за\s+период|период|period)\s*[:\-]?\s*([^\n]{4,40})", text)
    return fields


def _extract_waste(text: str) -> dict[str, Any]:
    fields: dict[str, Any] = {}
    match = re.search(_NUMBER + r"\s*(т|тонн\w*|кг|kg|tons?|t)\b", text, _FLAGS)
    if match:
        fields["waste_weight"] = parse_number(match.group(1))
        fields["waste_unit"] = "kg" if match.group(2).lower() in ("кг", "kg") else "t"
    fields["disposal_method"] = _search(
        r"\b(захоронение|утилизация|переработка|обезвреживание|сжигание|landfill|recycling|incineration)\b",
        text,
    )
    hazard = re.search(r"(\d)\s*класс\w*\s+опасности|hazard\s+class\s*(\d)", text, _FLAGS)
    if hazard:
        fields["hazard_class"] = int(hazard.group(1) or hazard.group(2))
    return fields


def _extract_suppliers(text: str) -> dict[str, Any]:
    return {
        "supplier_inn": _search(r"\b(?:инн|inn)\s*[:№]?\s*(\d{10}|\d{12})\b", text),
        "quantity":     _search_number(r"(?:количество|кол-во|quantity|qty)\D{0,10}" + _NUMBER, text),
        "total_amount": _search_number(
            r"(?:итого|всего\s+к\s+оплате|сумма|total)\D{0,20}" + _NUMBER, text
        ),
    }


_EXTRACTORS: dict[DocumentCategory, Callable[[str], dict[str, Any]]] = {
    DocumentCategory.TRANSPORT:  _extract_transport,
    DocumentCategory.ENERGY:     _extract_energy,
    DocumentCategory.PRODUCTION: _extract_production,
    DocumentCategory.WASTE:      _extract_waste,
    DocumentCategory.SUPPLIERS:  _extract_suppliers,
    DocumentCategory.OTHER:      lambda text: {},
}


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def classify_category(text: str) -> DocumentCategory:
    """Keyword vote; OTHER when nothing matches."""
    lowered = text.lower()
    scores = {
        category: sum(lowered.count(keyword) for keyword in pattern.keywords)
        for category, pattern in CATEGORY_PATTERNS.items()
        if pattern.keywords
    }
    best = max(scores, key=scores.get)
    return best if scores[best] > 0 else DocumentCategory.OTHER


def extract_fields(text: str, category: DocumentCategory) -> FieldExtraction:
    raw = _EXTRACTORS[category](text) if text else {}
    fields = {key: value for key, value in raw.items() if value not in (None, "")}
    return FieldExtraction(category=category, fields=fields)


def estimate_transport_co2(fields: dict[str, Any]) -> float | None:
    """kg CO2 from fuel litres and fuel type; None when either is unknown."""
    liters = fields.get("fuel_consumption_liters")
    factor = FUEL_EMISSION_FACTORS.get(fields.get("fuel_type") or "")
    if liters is None or factor is None:
        return None
    try:
        return round(float(liters) * factor, 2)
    except (TypeError, ValueError):
        return None
