"""Registration lifecycle derived from timestamps.

The status is never stored. Every consumer goes through
``registration_status`` and the rule table below so that "is it open"
means the same thing everywhere.
"""

import enum
from datetime import datetime, time, timezone
from typing import Optional

from libs.common.datetime_utils import ensure_utc, utc_now
from services.registrations_service.models import Registration, RegistrationType


class RegistrationStatus(str, enum.Enum):
    DRAFT = "draft"
    PAST = "past"
    EXPIRED = "expired"
    COMING_SOON = "coming_soon"
    PRESALE = "presale"
    OPEN = "open"


# status -> (available without presale code, available with presale code)
_AVAILABILITY: dict[RegistrationStatus, tuple[bool, bool]] = {
    RegistrationStatus.DRAFT: (False, False),
    RegistrationStatus.PAST: (False, False),
    RegistrationStatus.EXPIRED: (False, False),
    RegistrationStatus.COMING_SOON: (False, False),
    RegistrationStatus.PRESALE: (False, True),
    RegistrationStatus.OPEN: (True, True),
}

_DISPLAY_TEXT: dict[RegistrationStatus, str] = {
    RegistrationStatus.DRAFT: "Draft",
    RegistrationStatus.PAST: "Past",
    RegistrationStatus.EXPIRED: "Registration Closed",
    RegistrationStatus.COMING_SOON: "Coming Soon",
    RegistrationStatus.PRESALE: "Pre-Sale",
    RegistrationStatus.OPEN: "Open",
}

_SINGLE_DAY_TYPES = (RegistrationType.EVENT, RegistrationType.SCRIMMAGE)


def registration_status(
    registration: Registration, *, now: Optional[datetime] = None
) -> RegistrationStatus:
    now = ensure_utc(now) if now else utc_now()

    if not registration.is_active:
        return RegistrationStatus.DRAFT

    if registration.type in _SINGLE_DAY_TYPES and registration.end_date:
        event_end = datetime.combine(registration.end_date, time.min, tzinfo=timezone.utc)
        if now > event_end:
            return RegistrationStatus.PAST

    end_at = ensure_utc(registration.registration_end_at)
    if end_at and now > end_at:
        return RegistrationStatus.EXPIRED

    presale_start = ensure_utc(registration.presale_start_at)
    regular_start = ensure_utc(registration.regular_start_at)

    if presale_start:
        if now < presale_start:
            return RegistrationStatus.COMING_SOON
        if regular_start and now < regular_start:
            return RegistrationStatus.PRESALE

    if regular_start and now < regular_start:
        return RegistrationStatus.COMING_SOON

    return RegistrationStatus.OPEN


def is_status_available(status: RegistrationStatus, *, has_presale_code: bool) -> bool:
    without_code, with_code = _AVAILABILITY[status]
    return with_code if has_presale_code else without_code


def is_registration_available(
    registration: Registration,
    *,
    has_presale_code: bool = False,
    now: Optional[datetime] = None,
) -> bool:
    return is_status_available(
        registration_status(registration, now=now), has_presale_code=has_presale_code
    )


def status_display_text(status: RegistrationStatus) -> str:
    return _DISPLAY_TEXT[status]


def presale_code_matches(registration: Registration, code: Optional[str]) -> bool:
    """Presale codes compare case-insensitively, ignoring surrounding spaces."""
    if not code or not registration.presale_code:
        return False
    return code.strip().upper() == registration.presale_code.strip().upper()
