"""Cost/Progress Ledger for one pipeline run.

The ledger is an immutable value: every stage returns a new ledger with its
provider charge and/or progress step added, and the orchestrator writes the
ledger's totals to the project. Nothing accumulates in shared mutable state.

Usage:
    ledger = CostLedger.opening(actual_cost=project.actual_cost)
    ledger = ledger.advance(PROGRESS_ENHANCING_PROMPT)
    ledger = ledger.charge("prompt_enhancement", ACTUAL_COSTS["prompt_enhancement"])
    ledger.total_cost     # millicents
    ledger.progress       # never lower than any value passed to advance()
"""

from dataclasses import dataclass, field

from cgi_pipeline.constants import PROGRESS_GENERATING_VIDEO, PROGRESS_POLL_SPAN


@dataclass(frozen=True)
class CostEntry:
    """One provider charge in millicents."""

    stage: str
    amount: int


@dataclass(frozen=True)
class CostLedger:
    """Per-run record of provider charges and the user-visible progress.

    Attributes:
        entries: Charges in the order they were incurred.
        progress: Highest progress percentage reached so far.
    """

    entries: tuple[CostEntry, ...] = field(default_factory=tuple)
    progress: int = 0

    @classmethod
    def opening(cls, actual_cost: int = 0, progress: int = 0) -> "CostLedger":
        """Start a ledger from a project's persisted cost and progress."""
        entries = (CostEntry("carried_over", actual_cost),) if actual_cost else ()
        return cls(entries=entries, progress=progress)

    @property
    def total_cost(self) -> int:
        return sum(entry.amount for entry in self.entries)

    def charge(self, stage: str, amount: int) -> "CostLedger":
        """Return a ledger with one more charge.

        Raises:
            ValueError: If amount is negative.
        """
        if amount < 0:
            raise ValueError(f"Cost for {stage} must be non-negative, got {amount}")
        return CostLedger(entries=(*self.entries, CostEntry(stage, amount)), progress=self.progress)

    def advance(self, progress: int) -> "CostLedger":
        """Return a ledger whose progress is max(current, progress), capped at 100."""
        new_progress = max(self.progress, min(100, progress))
        if new_progress == self.progress:
            return self
        return CostLedger(entries=self.entries, progress=new_progress)

    def breakdown(self) -> dict[str, int]:
        """Total charged per stage."""
        totals: dict[str, int] = {}
        for entry in self.entries:
            totals[entry.stage] = totals.get(entry.stage, 0) + entry.amount
        return totals


def interpolate_poll_progress(attempt: int, max_attempts: int) -> int:
    """Progress shown while waiting on a video task: 80 + floor(attempt / max * 15)."""
    if max_attempts <= 0:
        return PROGRESS_GENERATING_VIDEO
    attempt = max(0, min(attempt, max_attempts))
    return PROGRESS_GENERATING_VIDEO + (attempt * PROGRESS_POLL_SPAN) // max_attempts
