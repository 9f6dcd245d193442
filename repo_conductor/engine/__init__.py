"""Work item orchestration engine.

Key Components:
    - Watchdog: Stage state machine driving one run
    - Scheduler: Selects and orders the items of a run
    - LockManager: Exclusive lock files with stale-lock recovery
    - StatusWriter: Single choke point for status snapshots and the ledger
    - FailureReporter: Failure reports for failed work items
    - CIDispatcher: CI snapshot refresh and CI_GREEN promotion
    - ApplyApprovalGate, MergeApprovalGate: Approval gates

Example:
    >>> from repo_conductor.engine.watchdog import Watchdog
    >>> result = await Watchdog(settings, collaborator).run(settings.run_options())
"""
