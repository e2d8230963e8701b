# kato_license/utils/policy.py
"""
License policy: pure functions over license/activation data.

Nothing here touches the database or the network. ``now`` is injectable
everywhere so the grace-period arithmetic can be tested against fixed clocks.
"""
import calendar
import re
from datetime import datetime, timedelta, timezone
from typing import Optional
from urllib.parse import urlparse

GRACE_PERIOD_DAYS = 7
UNLIMITED = -1

TIER_LIMITS = {
    "freelancer": 1,
    "agency": 5,
    "enterprise": UNLIMITED,
    "unlimited": UNLIMITED,
}

# next tier up, used for the upgrade hint on tier-limit rejections
TIER_UPGRADES = {
    "freelancer": ("Agency", TIER_LIMITS["agency"]),
    "agency": ("Enterprise", UNLIMITED),
}

LOCAL_PATTERNS = [
    re.compile(r"^https?://localhost", re.I),
    re.compile(r"^https?://127\.0\.0\.1", re.I),
    re.compile(r"^https?://(\[::1\]|::1)", re.I),
    re.compile(r"^https?://192\.168\.", re.I),
    re.compile(r"^https?://10\.", re.I),
]

# development TLDs, matched against the host only
LOCAL_SUFFIXES = (".local", ".test", ".dev")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored as UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value) -> Optional[datetime]:
    """Parse an ISO-8601 string (``Z`` suffix allowed) into an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    try:
        return ensure_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))
    except ValueError:
        return None


def classify_environment(site_url: str) -> str:
    """Return ``"local"`` for loopback/private/dev hosts, else ``"remote"``."""
    if any(pattern.search(site_url) for pattern in LOCAL_PATTERNS):
        return "local"
    if extract_domain(site_url).lower().rstrip(".").endswith(LOCAL_SUFFIXES):
        return "local"
    return "remote"


def is_local_environment(site_url: str) -> bool:
    return classify_environment(site_url) == "local"


def extract_domain(site_url: str) -> str:
    try:
        host = urlparse(site_url).hostname
    except ValueError:
        return site_url
    return host or site_url


def tier_limit(tier: Optional[str]) -> int:
    """Max non-local activations for a tier; -1 is unbounded, unknown tiers get 0."""
    return TIER_LIMITS.get((tier or "").lower(), 0)


def add_months(start: datetime, months: int) -> datetime:
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def calculate_expiry(billing_cycle: str, start: Optional[datetime] = None) -> datetime:
    start = ensure_utc(start) if start else utcnow()
    if billing_cycle == "annual":
        return add_months(start, 12)
    return add_months(start, 1)


def _days_since_expiry(expires_at: datetime, now: datetime) -> int:
    return (now - ensure_utc(expires_at)) // timedelta(days=1)


def is_in_grace_period(expires_at: datetime, now: Optional[datetime] = None) -> bool:
    now = now or utcnow()
    expires_at = ensure_utc(expires_at)
    return expires_at <= now < expires_at + timedelta(days=GRACE_PERIOD_DAYS)


def grace_period_days_remaining(expires_at: datetime, now: Optional[datetime] = None) -> int:
    now = now or utcnow()
    if now < ensure_utc(expires_at):
        return 0
    return max(0, GRACE_PERIOD_DAYS - _days_since_expiry(expires_at, now))


def license_status(license, now: Optional[datetime] = None) -> str:
    """
    Client-facing status of a license record.

    ``invalid`` for a missing or cancelled license, ``grace_period`` during
    the 7 days after ``expires_at``, ``expired`` after that, else ``active``.
    The grace-period check runs before the expiry check.
    """
    if license is None or license.status == "cancelled":
        return "invalid"
    if license.expires_at is None:
        return "invalid"

    now = now or utcnow()
    if is_in_grace_period(license.expires_at, now):
        return "grace_period"
    if now >= ensure_utc(license.expires_at):
        return "expired"
    return "active"


def is_usable(status: str) -> bool:
    return status in ("active", "grace_period")


def _version_parts(version: str) -> list:
    cleaned = re.sub(r"[^0-9.\-]", "", version or "")
    parts = []
    for segment in re.split(r"[.\-]", cleaned):
        parts.append(int(segment) if segment else 0)
    return parts


def compare_semver(a: str, b: str) -> int:
    left, right = _version_parts(a), _version_parts(b)
    width = max(len(left), len(right))
    left += [0] * (width - len(left))
    right += [0] * (width - len(right))
    if left < right:
        return -1
    if left > right:
        return 1
    return 0


def tier_limit_message(tier: str, current: int, limit: int) -> str:
    upgrade = TIER_UPGRADES.get(tier)
    hint = ""
    if upgrade:
        name, upgrade_limit = upgrade
        hint = f" Upgrade to {name} for {'unlimited' if upgrade_limit == UNLIMITED else upgrade_limit} sites."
    plural = "" if limit == 1 else "s"
    return (
        f"License tier limit reached. You're using {current} of {limit} allowed site{plural} "
        f"on the {tier.capitalize()} plan.{hint}"
    )
