from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from app.celery_app import celery_app
from app.core.config import settings
from app.core.database import SessionLocal
from app.services.sessions import SessionService


logger = logging.getLogger(__name__)


def _with_db_session() -> Session:
    return SessionLocal()


@celery_app.task(name="maintenance.sweep_expired_refresh_tokens")
def sweep_expired_refresh_tokens() -> dict:
    """Revoke expired refresh tokens, then hard-delete every revoked or expired row."""
    db = _with_db_session()
    try:
        result = SessionService(db).sweep_expired_tokens()
        return {"revoked": result.revoked, "deleted": result.deleted}
    finally:
        db.close()


@celery_app.task(name="maintenance.monitor_token_security")
def monitor_token_security() -> dict:
    """
    Report-only security scan: tokens close to the rotation ceiling, recent
    reuse incidents and families with more than one live token. Remediation
    already happened at rotation time; this only emits log signals.
    """
    db = _with_db_session()
    try:
        rotation = SessionService(db).rotation
        window_hours = settings.SECURITY_INCIDENT_WINDOW_HOURS

        suspicious = rotation.find_suspicious_tokens()
        for token in suspicious:
            logger.warning(
                "Suspicious rotation count: user_id=%s family=%s count=%s",
                token.user_id,
                token.token_family,
                token.rotation_count,
            )

        incidents = rotation.recent_security_incidents(window_hours)
        incident_families = sorted({t.token_family for t in incidents})
        if incidents:
            logger.error(
                "%s token reuse incidents in the last %sh across %s families: %s",
                len(incidents),
                window_hours,
                len(incident_families),
                ", ".join(incident_families),
            )

        forked = rotation.families_with_multiple_active_tokens()
        for family, count in forked:
            logger.warning("Multiple active tokens detected in family=%s (count: %s)", family, count)

        if not (suspicious or incidents or forked):
            logger.info("Token security scan clean")

        return {
            "suspicious_tokens": len(suspicious),
            "reuse_incidents": len(incidents),
            "incident_families": incident_families,
            "forked_families": [family for family, _ in forked],
        }
    finally:
        db.close()
