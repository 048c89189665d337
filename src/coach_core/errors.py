from __future__ import annotations


class CoachError(RuntimeError):
    pass


class ValidationError(CoachError):
    """Snapshot is structurally incomplete or out of order."""


class MissingSnapshotError(CoachError):
    """Analysis was requested before any snapshot was accepted."""


class RuleEvaluationError(CoachError):
    def __init__(self, rule_id: str, cause: Exception) -> None:
        super().__init__(f"Rule {rule_id} condition failed: {cause}")
        self.rule_id = rule_id
        self.cause = cause


class CapabilityError(CoachError):
    def __init__(self, capability: str, message: str) -> None:
        super().__init__(f"{capability}: {message}")
        self.capability = capability


class ResourceLimitError(CoachError):
    pass


class PersistenceError(CoachError):
    pass
