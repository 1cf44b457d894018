# core/usage.py
from __future__ import annotations

from dataclasses import dataclass

from models import TokenCounts


@dataclass
class TokenUsage:
    """Token counts reported by the completion API, summed across calls."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def from_response(cls, usage: dict[str, int] | None) -> TokenUsage:
        """Build from the optional ``usage`` object of a completion response."""
        tracked = cls()
        tracked.add(usage)
        if not tracked.total_tokens:
            tracked.total_tokens = tracked.prompt_tokens + tracked.completion_tokens
        return tracked

    def add(self, usage: TokenUsage | dict[str, int] | None) -> None:
        if not usage:
            return
        if isinstance(usage, TokenUsage):
            self.prompt_tokens += usage.prompt_tokens
            self.completion_tokens += usage.completion_tokens
            self.total_tokens += usage.total_tokens
            return
        # Providers sometimes send null for fields they do not track
        self.prompt_tokens += int(usage.get("prompt_tokens") or 0)
        self.completion_tokens += int(usage.get("completion_tokens") or 0)
        self.total_tokens += int(usage.get("total_tokens") or 0)

    @property
    def used(self) -> bool:
        return bool(self.prompt_tokens or self.completion_tokens or self.total_tokens)

    def to_counts(self) -> TokenCounts:
        """Progress-snapshot view of the running totals."""
        return TokenCounts(prompt=self.prompt_tokens, completion=self.completion_tokens)
