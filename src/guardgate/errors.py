"""Error taxonomy shared by every guardgate boundary.

ValidationError and PolicyDenied are expected, user-facing outcomes.
UpstreamFault carries the stage label so callers can tell "blocked by
policy" apart from "execution failed after passing policy".
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class GuardGateError(Exception):
    """Base class for all guardgate errors."""


class ValidationError(GuardGateError):
    """Raised when a request or intent is malformed; nothing has been evaluated."""

    def __init__(self, errors: List[str]) -> None:
        self.errors = list(errors)
        super().__init__("Invalid request: {}".format("; ".join(self.errors)))


class PolicyDenied(GuardGateError):
    """Raised when one or more guardians deny an action."""

    def __init__(self, denials: List[Any], message: Optional[str] = None) -> None:
        self.denials = list(denials)
        if message is None:
            message = "Denied by {}".format(
                ", ".join(getattr(d, "guardian", str(d)) for d in self.denials) or "policy",
            )
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": str(self),
            "denials": [d.to_dict() if hasattr(d, "to_dict") else d for d in self.denials],
        }


class ResourceNotFound(GuardGateError):
    """Raised for an unknown account, organisation, or action id."""


class UpstreamFault(GuardGateError):
    """Raised when a custody or market-data call fails or times out."""

    def __init__(self, message: str, stage: str = "execution") -> None:
        self.stage = stage
        super().__init__(message)


class ConfigurationError(GuardGateError):
    """Raised for an unknown preset, guardian key, or config field."""


class InvalidStateTransition(GuardGateError):
    """Raised when an approval is resolved from a non-pending state."""
