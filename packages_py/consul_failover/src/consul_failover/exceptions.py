"""
Errors raised by consul_failover
"""
from typing import Iterable, Optional

from .types import Target


class FailoverError(Exception):
    """Base error for failover failures"""


class NoViableTargetError(FailoverError):
    """Raised when every candidate target is currently blacklisted"""

    def __init__(
        self,
        targets: Iterable[Target] = (),
        message: str = "Failover strategy has determined that there are no viable hosts remaining",
    ) -> None:
        super().__init__(message)
        self.targets = tuple(targets)


class TargetsExhaustedError(NoViableTargetError):
    """Raised when every viable target failed within one attempt cycle"""

    def __init__(
        self,
        targets: Iterable[Target] = (),
        attempted: Iterable[Target] = (),
        last_error: Optional[Exception] = None,
    ) -> None:
        super().__init__(
            targets,
            "Unable to successfully determine a viable host for communication",
        )
        self.attempted = tuple(attempted)
        self.last_error = last_error
