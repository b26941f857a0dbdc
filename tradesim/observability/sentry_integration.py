"""Optional Sentry error tracking integration.

Initialises the Sentry SDK when SENTRY_DSN is set in the environment.
"""

from __future__ import annotations

import os

import sentry_sdk

from tradesim.observability.logger import get_logger

log = get_logger(__name__)

_ACTIVE = False


def init_sentry() -> bool:
    """Initialise Sentry if SENTRY_DSN is configured. Returns True if active."""
    global _ACTIVE
    dsn = os.environ.get("SENTRY_DSN", "")
    if not dsn:
        return False

    try:
        sentry_sdk.init(
            dsn=dsn,
            traces_sample_rate=0.0,
            environment=os.environ.get("ENVIRONMENT", "production"),
            release=os.environ.get("TRADESIM_VERSION", "0.1.0"),
            before_send=_scrub_event,
        )
    except Exception as e:
        log.error("sentry.init_failed", error=str(e))
        return False
    _ACTIVE = True
    log.info("sentry.initialised")
    return True


def capture_exception(exc: BaseException) -> None:
    """Forward an exception to Sentry when it has been initialised."""
    if _ACTIVE:
        sentry_sdk.capture_exception(exc)


def _scrub_event(event: dict, hint: dict) -> dict:
    """Remove sensitive data from Sentry events."""
    sensitive_keys = {"api_key", "secret", "password", "token", "dsn"}
    if "extra" in event:
        for key in list(event["extra"].keys()):
            if any(s in key.lower() for s in sensitive_keys):
                event["extra"][key] = "***REDACTED***"
    return event
