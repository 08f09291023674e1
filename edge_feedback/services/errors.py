"""Domain errors raised by the service layer."""


class RunNotFoundError(LookupError):
    """No decision run exists with the requested id."""

    def __init__(self, run_id: str):
        super().__init__(f"Decision run {run_id!r} not found")
        self.run_id = run_id


class InvalidOutcomeError(ValueError):
    """An outcome cannot be reconciled with its run (caller error)."""
