"""
Token counts supplied by callers.

Counts are authoritative numbers from the completion call; estimating them
is the caller's job.
"""

from dataclasses import dataclass

from .errors import InvalidInput


@dataclass(frozen=True)
class TokenUsage:
    """Prompt and completion token counts for one charge."""
    prompt_tokens: int
    completion_tokens: int

    def __post_init__(self):
        """Reject negative or non-integer counts."""
        for name in ("prompt_tokens", "completion_tokens"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise InvalidInput(f"{name} must be an integer", field=name)
            if value < 0:
                raise InvalidInput(f"{name} must be >= 0", field=name)

    @property
    def total_tokens(self) -> int:
        """Total tokens used (prompt + completion)."""
        return self.prompt_tokens + self.completion_tokens
