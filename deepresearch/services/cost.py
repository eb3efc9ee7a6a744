"""Estimated token usage and cost accounting for one research session."""
from __future__ import annotations

import math

from deepresearch.models.research import CostBreakdown, CostLine, UsageEntry

CHARS_PER_TOKEN = 4

# USD per 1M tokens (prompt, completion)
MODEL_PRICING: dict[str, tuple[float, float]] = {
    "meta-llama/llama-3.1-8b-instruct": (0.02, 0.03),
    "google/gemini-2.5-flash-preview-09-2025": (0.30, 2.50),
    "deepseek/deepseek-chat": (0.30, 1.20),
    "deepseek/deepseek-chat-v3.1": (0.15, 0.75),
    "deepseek/deepseek-reasoner": (0.55, 2.19),
    "openai/gpt-4o-mini": (0.15, 0.60),
    "qwen/qwen-2.5-72b-instruct": (0.35, 0.40),
    "google/gemini-flash-1.5": (0.30, 2.50),
}


def estimate_tokens(text: str) -> int:
    """Approximate token count from character length."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def calculate_cost(model: str, prompt_tokens: int, completion_tokens: int) -> float:
    prompt_rate, completion_rate = MODEL_PRICING.get(model, (0.0, 0.0))
    return (prompt_tokens / 1_000_000) * prompt_rate + (completion_tokens / 1_000_000) * completion_rate


class CostLedger:
    """Append-only usage log. A disabled ledger ignores every entry."""

    def __init__(self, enabled: bool = False):
        self.enabled = enabled
        self._entries: list[UsageEntry] = []

    @property
    def entries(self) -> list[UsageEntry]:
        return list(self._entries)

    def log_usage(self, step: str, model: str, prompt_tokens: int, completion_tokens: int) -> None:
        if not self.enabled:
            return
        self._entries.append(UsageEntry(step, model, prompt_tokens, completion_tokens))

    def get_breakdown(self) -> CostBreakdown | None:
        if not self.enabled or not self._entries:
            return None

        lines = [
            CostLine(
                step=entry.step,
                model=entry.model,
                tokens=entry.prompt_tokens + entry.completion_tokens,
                cost=calculate_cost(entry.model, entry.prompt_tokens, entry.completion_tokens),
            )
            for entry in self._entries
        ]
        return CostBreakdown(
            total_tokens=sum(line.tokens for line in lines),
            estimated_cost=sum(line.cost for line in lines),
            breakdown=lines,
        )

    def total_cost(self) -> float:
        breakdown = self.get_breakdown()
        return breakdown.estimated_cost if breakdown else 0.0

    def total_tokens(self) -> int:
        breakdown = self.get_breakdown()
        return breakdown.total_tokens if breakdown else 0

    def format_breakdown(self) -> str:
        breakdown = self.get_breakdown()
        if breakdown is None:
            return ""
        return format_breakdown(breakdown)


def format_breakdown(breakdown: CostBreakdown) -> str:
    rule = "-" * 72
    lines = ["Cost breakdown (estimated):", rule]
    for line in breakdown.breakdown:
        lines.append(
            f"  {line.step:<20} | {line.model:<40} | {line.tokens:>8,} tokens | ${line.cost:.4f}"
        )
    lines.append(rule)
    lines.append(f"  Total: {breakdown.total_tokens:,} tokens | ${breakdown.estimated_cost:.4f}")
    return "\n".join(lines)
