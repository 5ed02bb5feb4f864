"""Error taxonomy shared by the decision engine, the migration orchestrator and the venue binding."""


class RangeKeeperError(Exception):
    """Base class for every error raised by rangekeeper."""


class InvalidParameter(RangeKeeperError, ValueError):
    """Malformed configuration. Fatal at start-up, never raised while polling."""


class SnapshotUnavailable(RangeKeeperError):
    """A pool, position or wallet read failed; the poll loop skips the tick."""


class NoPositionFound(RangeKeeperError):
    """No tracked position exists in the configured pool; the poll loop waits."""


class StepFailure(RangeKeeperError):
    """A migration step failed. Always surfaced in MigrationResult.failure_detail."""

    def __init__(self, step, cause):
        self.step = step
        self.cause = cause
        super().__init__(f"step {int(step)}/5 ({step.label}) failed: {cause}")
