"""Credit pause — stop all dispatching when the agent runs out of quota.

The CLI reports exhausted credits on stderr ("You've hit your limit ·
resets 9pm (America/Mexico_City)"). When such a signature shows up the
whole system pauses until the reset time, or for an hour when no reset
time can be parsed. Expired credentials set a separate re-auth flag that
stays until an operator clears it.

State lives in the record store's settings table so it survives
restarts.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from grove.errors import CredentialOrQuotaExhausted
from grove.models import AuditEntry
from grove.store import RecordStore

logger = logging.getLogger(__name__)

CREDITS_PAUSED_UNTIL = "credits_paused_until"
CREDITS_PAUSE_REASON = "credits_pause_reason"
AUTH_EXPIRED = "auth_expired"

FALLBACK_PAUSE = timedelta(hours=1)

_CREDIT_PATTERNS = [
    re.compile(r"hit your limit", re.IGNORECASE),
    re.compile(r"rate limit", re.IGNORECASE),
    re.compile(r"out of credits", re.IGNORECASE),
    re.compile(r"\b429\b"),
    re.compile(r"quota exceeded", re.IGNORECASE),
    re.compile(r"billing", re.IGNORECASE),
    re.compile(r"usage cap", re.IGNORECASE),
]

_AUTH_PATTERNS = [
    re.compile(r"invalid api key", re.IGNORECASE),
    re.compile(r"authentication_error", re.IGNORECASE),
    re.compile(r"oauth token has expired", re.IGNORECASE),
    re.compile(r"please run /login", re.IGNORECASE),
    re.compile(r"\b401\b"),
]

_RESET_RE = re.compile(r"resets\s+(\d{1,2})(am|pm)\s+\(([^)]+)\)", re.IGNORECASE)

# Agent stdout is prose and may legitimately discuss billing or HTTP 401s.
# Only a short, single-block message that opens with one of the CLI's own
# error lines counts as a banner.
BANNER_MAX_CHARS = 300
BANNER_MAX_LINES = 3
_BANNER_LEAD = r"^\s*(?:(?:api\s+)?error:?\s*)?"

_CREDIT_BANNERS = [
    re.compile(_BANNER_LEAD + r"(?:you[’']?ve |you have )?hit your (?:usage )?limit", re.IGNORECASE | re.MULTILINE),
    re.compile(_BANNER_LEAD + r"(?:claude ai )?usage limit reached", re.IGNORECASE | re.MULTILINE),
    re.compile(_BANNER_LEAD + r"(?:you are |you[’']re )?out of credits", re.IGNORECASE | re.MULTILINE),
    re.compile(_BANNER_LEAD + r"credit balance is too low", re.IGNORECASE | re.MULTILINE),
    re.compile(_BANNER_LEAD + r"429\b.*rate_limit_error", re.IGNORECASE | re.MULTILINE),
]

_AUTH_BANNERS = [
    re.compile(_BANNER_LEAD + r"invalid api key", re.IGNORECASE | re.MULTILINE),
    re.compile(_BANNER_LEAD + r"oauth token has expired", re.IGNORECASE | re.MULTILINE),
    re.compile(_BANNER_LEAD + r"please run /login", re.IGNORECASE | re.MULTILINE),
    re.compile(_BANNER_LEAD + r"401\b.*authentication_error", re.IGNORECASE | re.MULTILINE),
]


def is_credit_error(text: str) -> bool:
    return any(p.search(text) for p in _CREDIT_PATTERNS)


def is_auth_error(text: str) -> bool:
    return any(p.search(text) for p in _AUTH_PATTERNS)


def parse_reset_time(text: str, now: datetime | None = None) -> datetime | None:
    """Parse "resets 9pm (Area/City)" into the next such moment, in UTC."""
    match = _RESET_RE.search(text)
    if not match:
        return None
    hour = int(match.group(1)) % 12
    if match.group(2).lower() == "pm":
        hour += 12
    try:
        tz = ZoneInfo(match.group(3).strip())
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone in reset message: %s", match.group(3))
        return None

    now = now or datetime.now(timezone.utc)
    local_now = now.astimezone(tz)
    reset = local_now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if reset <= local_now:
        reset += timedelta(days=1)
    return reset.astimezone(timezone.utc)


def detect_exhaustion(text: str, now: datetime | None = None) -> CredentialOrQuotaExhausted | None:
    """Classify agent stderr. Returns None when it looks normal."""
    if not text:
        return None
    now = now or datetime.now(timezone.utc)
    if is_auth_error(text):
        return CredentialOrQuotaExhausted("authentication expired", auth_expired=True)
    if is_credit_error(text):
        resume_at = parse_reset_time(text, now) or now + FALLBACK_PAUSE
        first_line = next((line.strip() for line in text.splitlines() if line.strip()), "")
        return CredentialOrQuotaExhausted(first_line[:200] or "credit limit", resume_at=resume_at)
    return None


def is_error_banner(text: str) -> bool:
    stripped = text.strip()
    if not stripped or len(stripped) > BANNER_MAX_CHARS or "\n\n" in stripped:
        return False
    if len(stripped.splitlines()) > BANNER_MAX_LINES:
        return False
    return any(p.search(stripped) for p in _CREDIT_BANNERS + _AUTH_BANNERS)


def detect_error_banner(text: str, now: datetime | None = None) -> CredentialOrQuotaExhausted | None:
    """Classify agent stdout. Only a bare CLI error banner is a pause signal."""
    if not is_error_banner(text):
        return None
    stripped = text.strip()
    if any(p.search(stripped) for p in _AUTH_BANNERS):
        return CredentialOrQuotaExhausted("authentication expired", auth_expired=True)
    now = now or datetime.now(timezone.utc)
    resume_at = parse_reset_time(stripped, now) or now + FALLBACK_PAUSE
    return CredentialOrQuotaExhausted(stripped.splitlines()[0][:200], resume_at=resume_at)


@dataclass
class PauseState:
    paused_until: datetime | None = None
    reason: str | None = None
    auth_expired: bool = False

    @property
    def active(self) -> bool:
        return self.auth_expired or self.paused_until is not None


class PauseManager:
    """Reads and writes the system-wide pause in the settings table."""

    def __init__(self, store: RecordStore):
        self.store = store

    async def state(self, now: datetime | None = None) -> PauseState:
        """Current pause. An expired credit pause is cleared on read."""
        now = now or datetime.now(timezone.utc)
        auth_expired = (await self.store.get_setting(AUTH_EXPIRED)) == "true"
        until_raw = await self.store.get_setting(CREDITS_PAUSED_UNTIL)
        until = datetime.fromisoformat(until_raw) if until_raw else None
        if until is not None and until <= now:
            logger.info("Credit pause expired at %s, resuming dispatch", until.isoformat())
            await self.store.delete_setting(CREDITS_PAUSED_UNTIL)
            await self.store.delete_setting(CREDITS_PAUSE_REASON)
            until = None
        reason = await self.store.get_setting(CREDITS_PAUSE_REASON) if until else None
        return PauseState(paused_until=until, reason=reason, auth_expired=auth_expired)

    async def is_paused(self, now: datetime | None = None) -> bool:
        return (await self.state(now)).active

    async def pause(self, error: CredentialOrQuotaExhausted, ticket_id: str | None = None) -> None:
        if error.auth_expired:
            await self.store.set_setting(AUTH_EXPIRED, "true")
            logger.warning("Agent credentials expired; dispatch paused until re-auth")
        else:
            until = error.resume_at or datetime.now(timezone.utc) + FALLBACK_PAUSE
            await self.store.set_setting(CREDITS_PAUSED_UNTIL, until.isoformat())
            await self.store.set_setting(CREDITS_PAUSE_REASON, error.reason)
            logger.warning("Credits exhausted (%s); dispatch paused until %s", error.reason, until.isoformat())
        await self.store.add_audit(
            AuditEntry(
                ticket_id=ticket_id,
                action="paused",
                detail={"reason": error.reason, "auth_expired": error.auth_expired},
            )
        )

    async def clear(self) -> None:
        for key in (CREDITS_PAUSED_UNTIL, CREDITS_PAUSE_REASON, AUTH_EXPIRED):
            await self.store.delete_setting(key)
        logger.info("Dispatch pause cleared")
