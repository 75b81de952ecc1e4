"""
Result type returned by the history services.

Undo, redo and write-log undo never raise to their callers; they return a
``HistoryResult`` and leave user-facing messaging to the blueprint or UI.
"""

from dataclasses import dataclass, field


@dataclass
class HistoryResult:
    success: bool
    code: str | None = None
    message: str | None = None
    description: str | None = None
    details: dict = field(default_factory=dict)

    @classmethod
    def ok(cls, description: str | None = None, **details) -> "HistoryResult":
        return cls(success=True, description=description, details=details)

    @classmethod
    def from_error(cls, error: Exception) -> "HistoryResult":
        """Build a failure result from any exception carrying a ``code``."""
        return cls(
            success=False,
            code=getattr(error, "code", "ERR_INTERNAL"),
            message=str(error),
        )

    @property
    def partial(self) -> bool:
        return bool(self.details.get("skipped"))

    def to_dict(self) -> dict:
        d: dict = {"success": self.success}
        if self.description is not None:
            d["description"] = self.description
        if self.code is not None:
            d["code"] = self.code
        if self.message is not None:
            d["error"] = self.message
        if self.details:
            d.update(self.details)
        return d
