"""Scheduled job bodies: retry sweep and verification expiry."""

from __future__ import annotations

import logging
from typing import Any

from threadline.core.logging import routing_context
from threadline.core.scheduler import Scheduler
from threadline.engine import RoutingEngine

logger = logging.getLogger(__name__)

RETRY_SWEEP_JOB = "retry-sweep"
VERIFICATION_EXPIRY_JOB = "verification-expiry"


async def run_retry_sweep_job(engine: RoutingEngine) -> dict[str, Any]:
    """Run one retry sweep.

    Args:
        engine: Routing engine whose sweeper owns the pending records

    Returns:
        The sweep summary as a dict
    """
    summary = await engine.sweeper.sweep()
    return summary.as_dict()


async def run_verification_expiry_job(engine: RoutingEngine) -> dict[str, int]:
    """Clear lapsed identity verifications across every organization.

    A failure in one organization is logged and does not stop the others.

    Returns:
        Dictionary with 'organizations', 'expired' and 'errors' counts
    """
    organization_ids = await engine.stores.identity_links.list_organization_ids()
    expired = 0
    errors = 0
    for organization_id in organization_ids:
        with routing_context(organization_id=organization_id):
            try:
                expired += await engine.resolver.expire_verifications(organization_id)
            except Exception:
                errors += 1
                logger.exception("Verification expiry failed for organization %s", organization_id)
    logger.info(
        "Verification expiry completed: organizations=%d, expired=%d, errors=%d",
        len(organization_ids),
        expired,
        errors,
    )
    return {"organizations": len(organization_ids), "expired": expired, "errors": errors}


def register_jobs(scheduler: Scheduler, engine: RoutingEngine) -> Scheduler:
    """Add the retry sweep and verification expiry jobs on their configured crons."""
    config = engine.config
    scheduler.add_job(RETRY_SWEEP_JOB, config.retry.sweep_cron, lambda: run_retry_sweep_job(engine))
    scheduler.add_job(
        VERIFICATION_EXPIRY_JOB,
        config.identity.verification_sweep_cron,
        lambda: run_verification_expiry_job(engine),
    )
    return scheduler


__all__ = [
    "RETRY_SWEEP_JOB",
    "VERIFICATION_EXPIRY_JOB",
    "register_jobs",
    "run_retry_sweep_job",
    "run_verification_expiry_job",
]
