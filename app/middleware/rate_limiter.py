"""
Per-blueprint request limits (Flask-Limiter).

The Limiter itself lives in app/__init__.py with no default limit. Mutating
governance blueprints get the tighter write budget; lookup-only blueprints
the read budget; health probes are exempt. Nothing is limited under TESTING.
"""

import logging

logger = logging.getLogger(__name__)

WRITE_LIMIT = "60/minute"
READ_LIMIT = "200/minute"

BLUEPRINT_LIMITS = {
    "stakeholder": WRITE_LIMIT,
    "phase_gate": WRITE_LIMIT,
    "workshop": WRITE_LIMIT,
    "security_assessment": WRITE_LIMIT,
    "variation": WRITE_LIMIT,
    "permission": READ_LIMIT,
}
EXEMPT_BLUEPRINTS = ("health_bp",)


def init_rate_limits(app, limiter):
    """Attach limits to the registered blueprints; call after registration."""
    if app.config.get("TESTING"):
        return

    applied = []
    for name, limit in BLUEPRINT_LIMITS.items():
        bp = app.blueprints.get(name)
        if bp is None:
            logger.warning("Rate limit configured for unknown blueprint %r", name)
            continue
        limiter.limit(limit)(bp)
        applied.append(name)

    for name in EXEMPT_BLUEPRINTS:
        bp = app.blueprints.get(name)
        if bp is not None:
            limiter.exempt(bp)

    logger.info("Rate limits applied to %d blueprints", len(applied),
                extra={"details": {"write": WRITE_LIMIT, "read": READ_LIMIT}})
