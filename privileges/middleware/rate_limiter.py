"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.
The Limiter instance is created in privileges/__init__.py with no default
limits; this module applies granular limits per route category.

Usage:
    from privileges.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Escalation / cron / jobs: 30/minute  (each call may run a full sweep)
        - Approval endpoints:       60/minute
        - Health check:             exempt

    Rate limiting is disabled in testing mode.
    """

    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    bp = app.blueprints.get("escalation_bp")
    if bp:
        limiter.limit("30/minute")(bp)

    bp = app.blueprints.get("approval_bp")
    if bp:
        limiter.limit("60/minute")(bp)

    # health probes are exempt
    bp = app.blueprints.get("health_bp")
    if bp:
        limiter.exempt(bp)

    app.logger.info("Rate limiter configured — escalation: 30/min, approval: 60/min")
