"""Configuration defaults for formguard handlers.

Handler options can be given as keyword arguments to the Validator handler
registration methods, or collected in a HandlerOptions instance.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

DEFAULT_DELAY_MS = 100
"""Default debounce delay of reactive handlers, in milliseconds."""


@dataclass(frozen=True)
class HandlerOptions:
    """Options for sync and async validation handlers.

    Attributes:
        initial_run: Whether to run the handler right after registration
        delay_ms: Debounce delay in milliseconds (None means the validator default)

    Examples:
        >>> opts = HandlerOptions(delay_ms=250)
        >>> opts.resolve_delay_ms(100)
        250
        >>> HandlerOptions().resolve_delay_ms(100)
        100
    """
    initial_run: bool = True
    delay_ms: Optional[int] = None

    def __post_init__(self):
        if self.delay_ms is not None and self.delay_ms < 0:
            raise ValueError(f"delay_ms must be non-negative, got {self.delay_ms}")

    def resolve_delay_ms(self, default: int) -> int:
        """Return the configured delay, falling back to the given default."""
        return default if self.delay_ms is None else self.delay_ms

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for serialization."""
        result: Dict[str, Any] = {"initialRun": self.initial_run}
        if self.delay_ms is not None:
            result["delayMs"] = self.delay_ms
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HandlerOptions":
        """Create HandlerOptions from dict."""
        return cls(
            initial_run=data.get("initialRun", True),
            delay_ms=data.get("delayMs"),
        )


__all__ = [
    "DEFAULT_DELAY_MS",
    "HandlerOptions",
]
