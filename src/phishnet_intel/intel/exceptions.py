"""
Intel Engine Exception Classes
"""

from typing import Any, Optional


class IntelError(Exception):
    """Base exception for threat intel ingestion"""
    pass


class FeedUnavailable(IntelError):
    """Raised when a feed provider cannot deliver data (network, HTTP, parse)"""

    def __init__(self, provider: str, reason: str):
        self.provider = provider
        self.reason = reason
        super().__init__(f"{provider}: {reason}")


class NormalizationFailure(IntelError):
    """Raised when a raw record cannot be mapped to an Indicator"""

    def __init__(self, reason: str, source: Optional[str] = None):
        self.reason = reason
        self.source = source
        super().__init__(reason if source is None else f"{source}: {reason}")


class UpsertConflict(IntelError):
    """Raised when an upsert keeps losing the race on the unique key"""

    def __init__(self, key: str, attempts: int):
        self.key = key
        self.attempts = attempts
        super().__init__(f"upsert of {key!r} conflicted {attempts} times")


class AlreadyRunning(IntelError):
    """Raised when a run is triggered while another one is active"""
    pass


class RunFailed(IntelError):
    """Raised when a run ends in the Failed state"""

    def __init__(self, reason: str, report: Any = None):
        self.reason = reason
        self.report = report
        super().__init__(reason)


class RunCancelled(RunFailed):
    """Raised when an operator cancels the active run"""
    pass
