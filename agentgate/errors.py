from __future__ import annotations

class AgentGateError(Exception):
    """Base for agentgate programming errors (bad input, not runtime outcomes)."""

class ApprovalInputError(AgentGateError, ValueError):
    """Invalid approval request: unknown risk level, decision or batch size."""

class PlanValidationError(AgentGateError, ValueError):
    """Plan violates a structural invariant."""

    def __init__(self, issues: list) -> None:
        self.issues = list(issues)
        summary = "; ".join(getattr(i, "message", str(i)) for i in self.issues[:5])
        super().__init__(f"Invalid plan ({len(self.issues)} issue(s)): {summary}")
