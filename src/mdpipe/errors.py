"""Exception hierarchy for pipeline failures.

Every fatal condition stops the whole pipeline.  The CLI maps these to an
``Error: ...`` message and a non-zero exit code; library code only raises.
"""

from __future__ import annotations

from typing import Iterable, List, Optional


class PipelineError(Exception):
    """Base class for all pipeline failures."""


class UsageError(PipelineError):
    """Bad or conflicting arguments, unknown stage names or keys."""


class PreconditionError(PipelineError):
    """A required binary or input artifact is missing or empty."""


class RecoveryError(PipelineError):
    """A crashed stage could not be resumed automatically."""


class AccelerationError(PipelineError):
    """Accelerated-MD parameters could not be derived or applied."""


class StageFailedError(PipelineError):
    """A stage finished without producing a complete artifact set."""

    def __init__(
        self,
        message: str,
        guidance: Optional[Iterable[str]] = None,
    ):
        super().__init__(message)
        self.guidance: List[str] = list(guidance or [])


STACK_SIZE_GUIDANCE = (
    "A 'SIGSEGV, segmentation fault' on very large systems usually means "
    "the stack size limit is too small",
    "Check the current limit with 'ulimit -s'",
    "Raise the hard limit for the stack size in "
    "/etc/security/limits.conf",
    "Enable pam_limits.so by adding 'session required pam_limits.so' "
    "to /etc/pam.d/login",
    "Log in again to activate the new settings",
)
