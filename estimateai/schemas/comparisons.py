"""
Pydantic schemas for the comparison endpoint.
"""

from estimateai.schemas.base import CamelModel


class CompareRequest(CamelModel):
    force: bool = False


class ComparisonResultOut(CamelModel):
    item_code: str
    result: str
    reason: str


class ComparisonStats(CamelModel):
    comparable_items: int = 0
    schedule_codes: int = 0
    boq_items: int = 0
    drawing_items: int = 0
    chunks: int = 0
    matched: int = 0
    mismatched: int = 0


class CompareResponse(CamelModel):
    results: list[ComparisonResultOut]
    stats: ComparisonStats
    cached: bool
