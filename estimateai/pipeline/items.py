"""
Normalisation of raw model records into persisted item columns.
"""

from typing import Any, Iterable, Optional

from estimateai.models.enums import ItemSource

# Keys (case-insensitive) that may carry a schedule code in a record's fields.
CODE_KEYS = ("code", "item_code", "itemcode", "item", "item_name", "name")

DEFAULT_CODES = {
    ItemSource.CAD: "NOTE",
    ItemSource.SCHEDULE: "ITEM",
    ItemSource.BOQ: "ITEM",
}

# Codes stored for rows that carried none; never a real schedule code.
PLACEHOLDER_CODES = frozenset(DEFAULT_CODES.values())

PLACEHOLDER_TEXT = "N/A"


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _to_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(str(value).replace(",", "").replace("mm", "").strip())
    except ValueError:
        return None


def normalize_fields(raw: Any) -> dict[str, str]:
    if not isinstance(raw, dict):
        return {}
    fields = {}
    for key, value in raw.items():
        name = _text(key)
        if not name or value is None:
            continue
        fields[name] = value if isinstance(value, str) else _text(value)
    return fields


def find_code(fields: dict[str, str]) -> Optional[str]:
    lowered = {k.lower(): v for k, v in fields.items()}
    for key in CODE_KEYS:
        value = _text(lowered.get(key))
        if value:
            return value
    return None


def normalize_box(raw: Any) -> Optional[dict[str, float]]:
    if not isinstance(raw, dict):
        return None
    box = {}
    for side in ("left", "top", "right", "bottom"):
        value = _to_float(raw.get(side))
        if value is None:
            return None
        box[side] = value
    return box


def normalize_item(raw: dict[str, Any], source: ItemSource) -> dict[str, Any]:
    """Map one model record onto ProjectItem column values."""
    fields = normalize_fields(raw.get("fields"))
    code = _text(raw.get("item_code"))

    if source == ItemSource.SCHEDULE:
        schedule_code = _text(fields.get("CODE")) or find_code(fields) or code
        if schedule_code.upper() in PLACEHOLDER_CODES:
            fields.pop("CODE", None)
        elif schedule_code:
            fields["CODE"] = schedule_code
            code = code or schedule_code

    placeholder = PLACEHOLDER_TEXT if source == ItemSource.BOQ else ""
    return {
        "source": source.value,
        "item_code": code or DEFAULT_CODES[source],
        "description": _text(raw.get("description")) or placeholder,
        "notes": _text(raw.get("notes")) or placeholder,
        "box_json": normalize_box(raw.get("box")),
        "thickness": _to_float(raw.get("thickness")),
        "fields_json": fields,
    }


def collect_schedule_codes(codes: Iterable[str], max_length: int) -> list[str]:
    """Distinct, order-preserving codes of 1..max_length characters."""
    seen: set[str] = set()
    result = []
    for code in codes:
        value = _text(code)
        if not value or len(value) > max_length or value in seen:
            continue
        seen.add(value)
        result.append(value)
    return result


def schedule_code_of(fields: Optional[dict]) -> Optional[str]:
    """The CODE a schedule item was stored with, or None for rows without one."""
    code = _text((fields or {}).get("CODE"))
    if not code or code.upper() in PLACEHOLDER_CODES:
        return None
    return code
