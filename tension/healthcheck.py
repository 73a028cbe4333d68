"""Provider health checks: ping each configured API in parallel."""

import asyncio
import logging

from tension.gateway import LLMGateway
from tension.models import ProviderId

logger = logging.getLogger(__name__)

_TIMEOUT_SEC = 15.0


async def _check_one(gateway: LLMGateway, provider_id: ProviderId) -> tuple[str, bool, str]:
    """Ping a single provider. Returns (provider_id, ok, error_message)."""
    try:
        ok = await asyncio.wait_for(gateway.test_provider(provider_id), timeout=_TIMEOUT_SEC)
    except TimeoutError:
        return provider_id, False, f"timed out after {_TIMEOUT_SEC:g}s"
    except Exception as exc:
        return provider_id, False, str(exc)
    return provider_id, ok, "" if ok else "connection test failed"


async def run_health_checks(
    gateway: LLMGateway,
    provider_ids: list[ProviderId],
) -> dict[str, tuple[bool, str]]:
    """Ping the given providers in parallel.

    Returns:
        Dict mapping provider id -> (ok, error_message).
        error_message is "" when ok is True.
    """
    results = await asyncio.gather(*(_check_one(gateway, pid) for pid in provider_ids))
    for pid, ok, err in results:
        if not ok:
            logger.debug("Health check failed for %s: %s", pid, err)
    return {pid: (ok, err) for pid, ok, err in results}
