"""Collaborator implementations.

Key Components:
    - WorkCollaborator: Abstract contract for the external pipeline steps
    - CommandCollaborator: Runs configured shell commands per step
"""

from repo_conductor.providers.base import WorkCollaborator
from repo_conductor.providers.command import CommandCollaborator

__all__ = [
    "CommandCollaborator",
    "WorkCollaborator",
]
