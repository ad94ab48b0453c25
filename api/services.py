"""
Service container — every long-lived collaborator, built once per app.

create_app() builds a Services from Settings (or receives one from tests)
and stores it on ``app.state.services``. Route dependencies read it from
there; nothing is a module-level singleton.
"""
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from api.config import DEFAULT_ADMIN_ADDRESS, Settings
from documents.store import IpfsDocumentStore
from identity.audit import AuditLogger
from identity.guard import AccessGuard
from identity.profile_cache import ProfileCache
from identity.revocation import MemoryRevocationStore, RevocationStore, SqlRevocationStore
from identity.tokens import TokenManager
from ledger.client import HttpLedgerClient, LedgerClient
from ledger.gateway import LedgerGateway
from ledger.local import LocalLedger

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    gateway: LedgerGateway
    tokens: TokenManager
    revocations: RevocationStore
    profiles: ProfileCache
    guard: AccessGuard
    audit: AuditLogger
    documents: Optional[IpfsDocumentStore] = None


def build_ledger_client(settings: Settings) -> LedgerClient:
    if settings.uses_local_ledger:
        admin = settings.ledger_admin_address or DEFAULT_ADMIN_ADDRESS
        logger.warning("Using in-process local ledger (admin %s) — development only", admin)
        return LocalLedger(owner=admin)
    return HttpLedgerClient(
        settings.ledger_rpc_url,
        settings.ledger_signing_key,
        timeout=settings.ledger_timeout_seconds,
    )


def build_services(settings: Settings, client: Optional[LedgerClient] = None) -> Services:
    client = client or build_ledger_client(settings)
    gateway = LedgerGateway(
        client,
        gas_limit=settings.gas_limit,
        gas_price=settings.gas_price,
        admin_address=settings.ledger_admin_address,
        read_retries=settings.ledger_read_retries,
    )

    if settings.revocation_db_url:
        revocations: RevocationStore = SqlRevocationStore(settings.revocation_db_url)
        logger.info("Revocation set backed by SQL store")
    else:
        revocations = MemoryRevocationStore()
        logger.info("Revocation set held in process memory")

    tokens = TokenManager(
        settings.jwt_secret,
        settings.jwt_refresh_secret,
        algorithm=settings.jwt_algorithm,
        access_ttl=timedelta(minutes=settings.access_token_expire_minutes),
        refresh_ttl=timedelta(days=settings.refresh_token_expire_days),
        revocations=revocations,
    )
    audit = AuditLogger()
    documents = (
        IpfsDocumentStore(settings.ipfs_api_url, settings.ipfs_gateway_url)
        if settings.ipfs_api_url else None
    )
    return Services(
        settings=settings,
        gateway=gateway,
        tokens=tokens,
        revocations=revocations,
        profiles=ProfileCache(gateway.get_stakeholder, ttl_seconds=settings.profile_cache_ttl_seconds),
        guard=AccessGuard(audit),
        audit=audit,
        documents=documents,
    )
