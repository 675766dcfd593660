"""
Run one vault sync from the command line, outside the API process.

Takes the same lease as the API-triggered sync, so it never overlaps a run
started through ``/vault-sync/trigger`` or ``/cron/vault-sync``.

Usage:
    uv run python -m scripts.run_vault_sync [full|incremental]
"""
import asyncio
import sys

from vault_access.core.database.engine import AsyncSessionLocal, init_db
from vault_access.features.vault.services import VaultServices
from vault_access.utils import get_logger


log = get_logger(__name__)


async def main(mode: str) -> int:
    await init_db()
    services = VaultServices.build(AsyncSessionLocal)
    try:
        result = await services.sync.run_sync(mode)
    finally:
        await services.aclose()

    if result.skipped_reason:
        log.warning("Sync skipped: %s", result.skipped_reason)
        return 2
    for error in result.errors:
        log.error("  %s [%s]: %s", error["entity_type"], error["scope"], error["message"])
    log.info("Sync %s in %d ms: %s", "succeeded" if result.success else "finished with errors",
             result.duration_ms, result.counts)
    return 0 if result.success else 1


if __name__ == "__main__":
    sys.exit(asyncio.run(main(sys.argv[1] if len(sys.argv) > 1 else "incremental")))
