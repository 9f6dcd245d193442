"""Apply and merge approval gates."""

from repo_conductor.engine.gates.apply_approval import ApplyApprovalGate
from repo_conductor.engine.gates.merge_approval import MergeApprovalGate

__all__ = [
    "ApplyApprovalGate",
    "MergeApprovalGate",
]
