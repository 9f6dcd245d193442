"""repo-conductor: multi-repository work item orchestration."""

__version__ = "0.1.0"
