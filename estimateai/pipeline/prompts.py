"""
Prompt templates for extraction and comparison calls.
"""

import json

_ITEM_SHAPE = (
    '{"items": [{"item_code": str, "description": str, "notes": str, '
    '"box": {"left": num, "top": num, "right": num, "bottom": num} | null, '
    '"thickness": num | null, "fields": {str: str}}]}'
)


def schedule_prompt() -> str:
    return (
        "Extract every row of the finishes / door / window schedule in this document.\n"
        "For each row put the schedule code in fields.CODE and copy every other column "
        "into fields using the column header as key.\n"
        "item_code is the schedule code; description summarises the row.\n"
        f"Return JSON only, shaped as {_ITEM_SHAPE}."
    )


def drawing_prompt(schedule_codes: list[str]) -> str:
    return (
        "Extract every annotated element on this construction drawing that refers to one "
        "of the schedule codes below. Use the code as item_code; use NOTE for general notes.\n"
        "Report the bounding box as fractions of the page (0..1) when visible and the "
        "thickness in millimetres when annotated.\n"
        f"Schedule codes: {json.dumps(schedule_codes)}\n"
        f"Return JSON only, shaped as {_ITEM_SHAPE}."
    )


def boq_prompt() -> str:
    return (
        "Extract every priced line of this bill of quantities.\n"
        "item_code is the BOQ reference; copy qty, unit, rate and amount into fields, "
        "and the bill section into fields.category.\n"
        f"Return JSON only, shaped as {_ITEM_SHAPE}."
    )


def boq_rows_prompt(sheet_name: str, rows: list[str], part: int, total: int) -> str:
    body = "\n".join(rows)
    return (
        f"The following rows are part {part} of {total} of the bill of quantities sheet "
        f'"{sheet_name}". Columns are separated by " | ".\n'
        "Extract every priced line. item_code is the BOQ reference; copy qty, unit, rate "
        "and amount into fields. Skip headers and blank rows.\n"
        f"Return JSON only, shaped as {_ITEM_SHAPE}.\n\n"
        f"ROWS:\n{body}"
    )


def comparison_prompt(boq_groups: list[dict], drawing_groups: list[dict]) -> str:
    return (
        "Compare each BOQ group against the drawing details for the same schedule code.\n"
        "Rules:\n"
        "- Mark mismatched only when a drawing detail contradicts a critical attribute "
        "(material, dimension, thickness, finish, quantity basis).\n"
        "- A BOQ group with no drawing details is matched.\n"
        "- reason is short markdown explaining the verdict.\n"
        'Return JSON only, shaped as {"results": [{"item_code": str, '
        '"result": "matched" | "mismatched", "reason": str}]} with one entry per BOQ group.\n\n'
        f"BOQ GROUPS:\n{json.dumps(boq_groups, ensure_ascii=False)}\n\n"
        f"DRAWING DETAILS:\n{json.dumps(drawing_groups, ensure_ascii=False)}"
    )
