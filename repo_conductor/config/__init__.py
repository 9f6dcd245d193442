"""Configuration for the orchestration engine.

Key Components:
    - ConductorSettings: Process settings with YAML loading and env overrides
    - RunOptions: Immutable options of a single run

Example:
    >>> from repo_conductor.config.settings import ConductorSettings
    >>> settings = ConductorSettings.from_yaml("conductor.yaml")
    >>> options = settings.run_options(limit=2)
"""
