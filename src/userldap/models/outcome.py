"""Tagged results of backend operations.

Backend operations report soft negatives by returning `False` or `None` and
report hard failures by raising exceptions. Hosts that prefer a single
translation point can wrap any backend call with `capture`, which folds both
styles into one `Outcome`.
"""

from __future__ import annotations

from collections.abc import Awaitable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from ..exceptions import (
    FatalLookupError,
    LDAPError,
    OfflineIdentityError,
    PolicyRejectedError,
)

__all__ = ["Outcome", "OutcomeStatus", "capture"]


class OutcomeStatus(Enum):
    """Classification of the result of a backend operation."""

    ok = "ok"
    not_found = "not_found"
    offline = "offline"
    policy_rejected = "policy_rejected"
    fatal = "fatal"


@dataclass(frozen=True, slots=True)
class Outcome:
    """Result of a backend operation."""

    status: OutcomeStatus
    """Classification of the result."""

    value: Any = None
    """Value returned by the operation, if it returned normally."""

    message: str | None = None
    """Error message, if the operation raised an exception."""

    code: int | None = None
    """Directory result code, only set for policy rejections."""

    @property
    def ok(self) -> bool:
        """Whether the operation succeeded with a usable value."""
        return self.status == OutcomeStatus.ok


async def capture(operation: Awaitable[Any]) -> Outcome:
    """Run a backend operation and classify its result.

    Parameters
    ----------
    operation
        Awaitable returned by calling a backend method.

    Returns
    -------
    Outcome
        ``not_found`` if the operation returned `False` or `None`, ``ok``
        with the value for any other return, and the matching error status
        if it raised one of the identity or directory errors. Other
        exceptions propagate.
    """
    try:
        value = await operation
    except OfflineIdentityError as e:
        return Outcome(OutcomeStatus.offline, message=str(e))
    except PolicyRejectedError as e:
        return Outcome(
            OutcomeStatus.policy_rejected, message=e.message, code=e.code
        )
    except (FatalLookupError, LDAPError) as e:
        return Outcome(OutcomeStatus.fatal, message=str(e))
    if value is False or value is None:
        return Outcome(OutcomeStatus.not_found, value=value)
    return Outcome(OutcomeStatus.ok, value=value)
