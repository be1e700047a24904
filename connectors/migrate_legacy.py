"""
Re-encrypt secrets still stored under the historical fixed salt.

Run with ``python -m connectors.migrate_legacy``.  Secrets that already carry
a per-record salt are left alone, so the walk is safe to repeat.
"""

from __future__ import annotations

import asyncio
import logging
import sys
import warnings
from typing import Any, Dict, Optional

from pydantic import BaseModel, ValidationError

from config.settings import config
from connectors.errors import DecryptionError
from connectors.vault import CredentialVault, EncryptedSecret, LegacyEncryptedSecret, is_legacy_secret
from database.store import SyncStore

logger = logging.getLogger(__name__)


class MigrationReport(BaseModel):
    scanned: int = 0
    migrated: int = 0
    failed: int = 0


def _reseal(vault: CredentialVault, data: Optional[Dict[str, Any]]) -> Optional[EncryptedSecret]:
    if not is_legacy_secret(data):
        return None
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", DeprecationWarning)
        plaintext = vault.decrypt_legacy(LegacyEncryptedSecret.model_validate(data))
    return vault.encrypt(plaintext)


async def migrate_legacy_secrets(store: SyncStore, vault: CredentialVault) -> MigrationReport:
    report = MigrationReport()
    for connection in await store.list_all_connections():
        report.scanned += 1
        try:
            access = _reseal(vault, connection.access_token_enc)
            refresh = _reseal(vault, connection.refresh_token_enc)
        except (DecryptionError, ValidationError) as exc:
            report.failed += 1
            logger.warning("Connection %s could not be migrated: %s", connection.id, exc)
            continue
        if access is None and refresh is None:
            continue
        await store.replace_secrets(connection.id, access_token=access, refresh_token=refresh)
        report.migrated += 1
        logger.info("Re-encrypted legacy secrets for connection %s", connection.id)
    return report


async def _main() -> MigrationReport:
    from database.session import async_session_factory, engine
    from database.store import SqlAlchemyStore

    vault = CredentialVault(config.vault_master_secret, iterations=config.vault_kdf_iterations)
    try:
        return await migrate_legacy_secrets(SqlAlchemyStore(async_session_factory), vault)
    finally:
        await engine.dispose()


def main() -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s  %(levelname)-8s  %(name)s — %(message)s",
        stream=sys.stdout,
    )
    report = asyncio.run(_main())
    logger.info("Legacy migration done: %s", report.model_dump())
    return 1 if report.failed else 0


if __name__ == "__main__":
    sys.exit(main())
