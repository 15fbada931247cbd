"""
AI Coach Context Module

Builds the bounded prompt context for one coach request: the athlete's
metrics summary plus as much recent conversation as fits the budget.

Sizes are estimated tokens of the whole prompt sent upstream: the system
prompt, the metrics summary and the conversation, rendered as one text.
The provider messages carry a subset of that text, so a context that fits
the budget is never larger upstream.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from services.metrics_aggregator import DomainSummary, MetricDomain, MetricsSummary

CHARS_PER_TOKEN = 4

# Highest priority first; truncation drops from the end.
DOMAIN_PRIORITY: Tuple[MetricDomain, ...] = (
    MetricDomain.TRAINING,
    MetricDomain.WORKOUT,
    MetricDomain.STRENGTH,
    MetricDomain.HEALTH,
)

COACH_SYSTEM_PROMPT = """You are an AI endurance and strength coach. You give personalized, data-driven guidance.

## Core principles

1. Ground every point in the athlete's metrics below. If a domain says "no data", say you cannot judge it instead of guessing.
2. Trends are per day over the recent window. A rising training load with a falling HRV is a recovery warning.
3. Be concise, use plain language and markdown structure, and end with something actionable.
4. Never give medical advice. Refer injuries, illness and medication questions to a healthcare professional."""


@dataclass(frozen=True)
class ChatMessage:
    """One conversation turn."""
    role: str  # 'user' | 'assistant'
    text: str


@dataclass(frozen=True)
class CoachContext:
    """Everything the provider sees for one request. Built once, consumed once."""
    user_id: str
    summary: MetricsSummary
    conversation_history: Tuple[ChatMessage, ...]  # oldest -> newest
    budget_remaining: int
    history_truncated: bool = False
    dropped_domains: Tuple[MetricDomain, ...] = ()
    system_prompt: str = COACH_SYSTEM_PROMPT

    @property
    def summary_truncated(self) -> bool:
        return bool(self.dropped_domains)


def estimate_tokens(text: str) -> int:
    """Estimate token count from text."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def _fmt(value: Optional[float]) -> str:
    return f"{value:.2f}".rstrip("0").rstrip(".") if value is not None else "n/a"


def render_domain(domain: MetricDomain, summary: DomainSummary) -> str:
    label = f"{domain.value} [{summary.field}{', ' + summary.unit if summary.unit else ''}]"
    if not summary.has_data:
        line = f"{label}: no data"
        if summary.invalid_count:
            line += f" ({summary.invalid_count} invalid records excluded)"
        return line

    trend = "n/a" if summary.trend_slope is None else f"{summary.trend_slope:+.2f}/day"
    line = (
        f"{label}: n={summary.count} mean={_fmt(summary.mean)} min={_fmt(summary.min)} "
        f"max={_fmt(summary.max)} trend={trend} last={_fmt(summary.last_value)}"
    )
    if summary.invalid_count:
        line += f" invalid={summary.invalid_count}"
    return line


def render_summary(summary: MetricsSummary) -> str:
    if not len(summary):
        return ""
    lines = ["## Athlete metrics"]
    lines.extend(render_domain(domain, s) for domain, s in summary.items())
    return "\n".join(lines)


def render_history(history: Sequence[ChatMessage]) -> str:
    if not history:
        return ""
    lines = ["## Conversation"]
    lines.extend(f"{m.role}: {m.text}" for m in history)
    return "\n".join(lines)


def render_context(summary: MetricsSummary, history: Sequence[ChatMessage], system_prompt: str = "") -> str:
    """Serialized form of a prompt; its estimated size is what the budget bounds."""
    parts = (system_prompt, render_summary(summary), render_history(history))
    return "\n\n".join(part for part in parts if part)


def to_provider_messages(context: CoachContext, system_prompt: Optional[str] = None) -> List[Dict[str, Any]]:
    """Chat-completion messages: system prompt with metrics, then history in order."""
    if system_prompt is None:
        system_prompt = context.system_prompt
    system = "\n\n".join(part for part in (system_prompt, render_summary(context.summary)) if part)
    messages: List[Dict[str, Any]] = [{"role": "system", "content": system}]
    messages.extend({"role": m.role, "content": m.text} for m in context.conversation_history)
    return messages


class ContextBuilder:
    """
    Builds a CoachContext under a size budget.

    Truncation rules:
    - The summary goes in first. If it alone is over budget, domains are
      dropped lowest priority first (health, strength, workout, training).
    - History is added newest-first and stops at the first message that
      would overflow; older messages are the ones lost.
    - The newest message is kept whenever it fits on its own, even if that
      costs more summary domains.
    - The system prompt is always sent, so it counts against every budget.
    """

    def __init__(self, priority: Sequence[MetricDomain] = DOMAIN_PRIORITY, system_prompt: str = COACH_SYSTEM_PROMPT):
        self.priority = tuple(priority)
        self.system_prompt = system_prompt

    def _size(self, summary: MetricsSummary, history: Sequence[ChatMessage]) -> int:
        return estimate_tokens(render_context(summary, history, self.system_prompt))

    def _drop_order(self, summary: MetricsSummary) -> List[MetricDomain]:
        present = [d for d, _ in summary.items()]
        ranked = [d for d in self.priority if d in present]
        # Unranked domains go before any ranked one.
        unranked = [d for d in present if d not in ranked]
        return unranked + list(reversed(ranked))

    def _fit_summary(
        self,
        summary: MetricsSummary,
        history: Sequence[ChatMessage],
        budget: int,
    ) -> Tuple[MetricsSummary, List[MetricDomain]]:
        dropped: List[MetricDomain] = []
        for domain in self._drop_order(summary):
            if self._size(summary, history) <= budget:
                break
            summary = summary.without(domain)
            dropped.append(domain)
        return summary, dropped

    def build(
        self,
        user_id: str,
        summary: MetricsSummary,
        history: Sequence[ChatMessage],
        budget: int,
    ) -> CoachContext:
        history = tuple(history)
        if estimate_tokens(self.system_prompt) > budget:
            raise ValueError(f"context budget {budget} is smaller than the system prompt")
        summary, dropped = self._fit_summary(summary, (), budget)

        kept: Tuple[ChatMessage, ...] = ()
        if history:
            newest = history[-1:]
            if self._size(summary, newest) > budget and self._size(MetricsSummary(), newest) <= budget:
                summary, more = self._fit_summary(summary, newest, budget)
                dropped.extend(more)

            for message in reversed(history):
                candidate = (message,) + kept
                if self._size(summary, candidate) > budget:
                    break
                kept = candidate

        return CoachContext(
            user_id=user_id,
            summary=summary,
            conversation_history=kept,
            budget_remaining=budget - self._size(summary, kept),
            history_truncated=len(kept) < len(history),
            dropped_domains=tuple(dropped),
            system_prompt=self.system_prompt,
        )
