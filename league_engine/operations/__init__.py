"""
Operations layer.

Business logic that composes the database models into the engine's workflows.
Each module owns one concern and runs inside a caller-supplied session or its
own transaction.

- MatchResultRecorder: scored result rows for finalized matches
- StandingsAggregator: best-K standings and ranking per division
- RatingEngine: per-season player ratings and their history
- RecalculationCoordinator: preview-before-apply replay jobs
- AdjustmentLedger: manual rating corrections
- LockGate: season locks guarding every writer
- AdminOperations: permission-checked, audited admin commands
"""
