"""Error taxonomy for dispatch and agent execution.

Per-dispatch failures (workspace, process, regression) degrade to
"ticket stays eligible next sweep". Only credential/quota exhaustion
escalates to a system-wide pause.
"""

from __future__ import annotations

from datetime import datetime


class GroveError(Exception):
    """Base class for all Grove errors."""


class NotFound(GroveError):
    """A record-store lookup found nothing."""

    def __init__(self, kind: str, key: str):
        super().__init__(f"{kind} not found: {key}")
        self.kind = kind
        self.key = key


class WorkspaceUnavailable(GroveError):
    """The project's main repository is missing or inaccessible."""


class ProcessTimeout(GroveError):
    """An agent process exceeded its wall-clock deadline."""

    def __init__(self, session_dir: str, timeout: float):
        super().__init__(f"Agent process timed out after {timeout:.0f}s ({session_dir})")
        self.session_dir = session_dir
        self.timeout = timeout


class ProcessFailure(GroveError):
    """Non-zero exit, or output too short to count as a result."""

    def __init__(self, message: str, exit_code: int | None = None, stderr: str = ""):
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr = stderr


class RegressionRejected(GroveError):
    """A new document version is disproportionately shorter than its predecessor."""

    def __init__(self, previous_length: int, new_length: int, ratio: float):
        super().__init__(
            f"Document regression: new version is {new_length} chars, "
            f"below {ratio:.0%} of previous {previous_length} chars"
        )
        self.previous_length = previous_length
        self.new_length = new_length
        self.ratio = ratio


class ContextLimitExceeded(GroveError):
    """The conversation's input-token budget is exhausted."""

    def __init__(self, input_tokens: int, limit: int):
        super().__init__(f"Context limit exceeded: {input_tokens} > {limit} input tokens")
        self.input_tokens = input_tokens
        self.limit = limit


class CredentialOrQuotaExhausted(GroveError):
    """Agent output matched a rate-limit, quota, or auth-expiry signature."""

    def __init__(self, reason: str, resume_at: datetime | None = None, auth_expired: bool = False):
        super().__init__(reason)
        self.reason = reason
        self.resume_at = resume_at
        self.auth_expired = auth_expired


class DocumentCapReached(GroveError):
    """Research already has its full set of versions."""

    def __init__(self, ticket_id: str, cap: int):
        super().__init__(f"Ticket {ticket_id} already has {cap} research versions")
        self.ticket_id = ticket_id
        self.cap = cap


class ShipFailed(GroveError):
    """Merging a ticket branch back into the main repository failed."""

    def __init__(self, message: str, log: list[str]):
        super().__init__(message)
        self.log = log
