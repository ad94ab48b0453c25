"""Shared test fixtures and configuration for the PharmaChain test suite."""

from datetime import date

import pytest
from fastapi.testclient import TestClient

from api.config import Settings
from api.services import Services
from identity.audit import AuditLogger
from identity.guard import AccessGuard
from identity.profile_cache import ProfileCache
from identity.revocation import MemoryRevocationStore
from identity.tokens import TokenManager
from ledger.gateway import LedgerGateway
from ledger.local import LocalLedger
from ledger.models import Role

ADMIN = "0x" + "a" * 40
MANUFACTURER = "0x" + "1" * 40
DISTRIBUTOR = "0x" + "2" * 40
RETAILER = "0x" + "3" * 40
REGULATOR = "0x" + "4" * 40
LABORATORY = "0x" + "5" * 40
PENDING_MANUFACTURER = "0x" + "6" * 40
STRANGER = "0x" + "7" * 40

# verified stakeholders registered by the admin
SEED_STAKEHOLDERS = [
    (MANUFACTURER, "Acme Pharma", "MFG-001", Role.MANUFACTURER),
    (DISTRIBUTOR, "FastShip Logistics", "DST-001", Role.DISTRIBUTOR),
    (RETAILER, "Corner Pharmacy", "RTL-001", Role.RETAILER),
    (REGULATOR, "Drug Authority", "REG-001", Role.REGULATOR),
    (LABORATORY, "QA Labs", "LAB-001", Role.LABORATORY),
]

JWT_SECRET = "test-access-secret"
JWT_REFRESH_SECRET = "test-refresh-secret"
FRONTEND_URL = "https://pharmachain.test"


@pytest.fixture()
def ledger():
    """In-process ledger owned by ADMIN, empty."""
    return LocalLedger(owner=ADMIN)


@pytest.fixture()
def gateway(ledger):
    """Started gateway over a ledger seeded with verified stakeholders and one pending manufacturer."""
    gw = LedgerGateway(ledger, gas_limit=500_000, gas_price=20_000_000_000, sleep=lambda s: None)
    gw.start()
    for address, name, license_number, role in SEED_STAKEHOLDERS:
        gw.register_stakeholder(address, name, license_number, role, actor=ADMIN)
    gw.register_stakeholder(PENDING_MANUFACTURER, "New Pharma", "MFG-002", Role.MANUFACTURER,
                            actor=PENDING_MANUFACTURER)
    yield gw
    if gw.ready:
        gw.close()


@pytest.fixture()
def token_manager():
    return TokenManager(JWT_SECRET, JWT_REFRESH_SECRET, revocations=MemoryRevocationStore())


@pytest.fixture()
def settings():
    return Settings(
        app_env="test",
        jwt_secret=JWT_SECRET,
        jwt_refresh_secret=JWT_REFRESH_SECRET,
        frontend_url=FRONTEND_URL,
    )


@pytest.fixture()
def services(settings, gateway, token_manager):
    audit = AuditLogger()
    return Services(
        settings=settings,
        gateway=gateway,
        tokens=token_manager,
        revocations=token_manager.revocations,
        profiles=ProfileCache(gateway.get_stakeholder, ttl_seconds=60),
        guard=AccessGuard(audit),
        audit=audit,
    )


@pytest.fixture()
def client(services):
    from api.main import create_app

    app = create_app(services=services)
    with TestClient(app) as c:
        yield c


@pytest.fixture()
def auth_headers(services):
    """Factory: bearer headers for a registered stakeholder address."""
    def _headers(address):
        stakeholder = services.gateway.get_stakeholder(address)
        pair = services.tokens.issue_for(stakeholder)
        return {"Authorization": f"Bearer {pair.access_token}"}
    return _headers


def mint_amoxicillin(gateway, qr_hash="ab" * 32, batch_number="BATCH-2024-001", actor=MANUFACTURER):
    return gateway.mint_batch(
        drug_name="Amoxicillin",
        batch_number=batch_number,
        manufacturing_date=date(2024, 1, 15),
        expiry_date=date(2026, 1, 15),
        document_ref="bafy-doc",
        quantity=1000,
        qr_hash=qr_hash,
        actor=actor,
    )
