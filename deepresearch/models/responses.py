"""Structured LLM response shapes and the parser that validates them."""
from __future__ import annotations

import json
from typing import Literal, TypeVar

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from deepresearch.errors import MalformedResponseError
from deepresearch.models.research import Gap

Level = Literal["high", "medium", "low"]


class PlannedQuery(BaseModel):
    query: str
    purpose: str = ""
    priority: Level = "medium"


class PlanningResponse(BaseModel):
    analysis: str = ""
    queries: list[PlannedQuery] = Field(default_factory=list)
    synthesis_note: str = ""


class GapItem(BaseModel):
    type: Literal["entity", "conceptual"] = "conceptual"
    description: str
    impact: Level = "medium"


class FollowUpQuery(BaseModel):
    query: str
    rationale: str = ""
    priority: Level = "medium"


class EvaluationResponse(BaseModel):
    summary: str = ""
    gaps: list[GapItem] = Field(default_factory=list)
    follow_up_queries: list[FollowUpQuery] = Field(default_factory=list)
    goal_met: bool = False

    def to_gaps(self) -> list[Gap]:
        return [Gap(kind=gap.type, description=gap.description, impact=gap.impact) for gap in self.gaps]


class RankedEntry(BaseModel):
    index: int
    relevance: Level = "medium"
    reason: str = ""


class ExcludedEntry(BaseModel):
    index: int
    reason: str = ""


class FilteringResponse(BaseModel):
    ranked_sources: list[RankedEntry] = Field(default_factory=list)
    excluded: list[ExcludedEntry] = Field(default_factory=list)


class SummaryResponse(BaseModel):
    summary: str
    key_takeaway: str = ""
    relevance: Level = "medium"


ResponseT = TypeVar("ResponseT", bound=BaseModel)


def extract_json_object(raw_text: str) -> dict:
    """Pull the outermost JSON object out of free LLM text, tolerating code fences."""
    text = raw_text.strip()
    if text.startswith("```"):
        parts = text.split("```")
        if len(parts) >= 2:
            text = parts[1]
        if text.startswith("json"):
            text = text[4:]
        text = text.strip()
    start = text.find("{")
    end = text.rfind("}")
    if start < 0 or end <= start:
        raise json.JSONDecodeError("object not found", text, 0)
    parsed = json.loads(text[start : end + 1])
    if not isinstance(parsed, dict):
        raise json.JSONDecodeError("not an object", text, 0)
    return parsed


def parse_llm_json(raw_text: str, model_cls: type[ResponseT]) -> ResponseT:
    try:
        payload = extract_json_object(raw_text)
        return model_cls.model_validate(payload)
    except (json.JSONDecodeError, PydanticValidationError) as exc:
        raise MalformedResponseError(
            f"Could not parse {model_cls.__name__}: {exc}",
            raw_text=raw_text,
        ) from exc
