"""
Error taxonomy for scrape tasks and synchronization.

Every error carries a ``retryable`` flag that the orchestrator's retry
policy reads. Configuration mismatches are final; everything that can be
caused by a slow widget, a crashed browser or a busy database is retried.
"""


class ScraperError(Exception):
    """Base class for all scraper errors."""
    retryable: bool = True


class RoomSelectionError(ScraperError):
    """The room type's external id has no selectable option in the widget."""
    retryable = False


class NavigationExhausted(ScraperError):
    """The calendar did not reach the target month within the step bound."""

    def __init__(self, target: str, steps: int, last_label: str = ""):
        self.target = target
        self.steps = steps
        self.last_label = last_label
        super().__init__(
            f"Could not navigate to {target} after {steps} steps "
            f"(last displayed: {last_label or 'n/a'})"
        )


class StorageConflict(ScraperError):
    """Concurrent write anomaly while replacing a room type's date range."""


class AutomationFailure(ScraperError):
    """Driver-level failure (crashed session, timeout, unreachable widget)."""
