"""
Tests for Module 01 — Identity & Token Manager.
Tests issue / verify / revoke / refresh, login challenges, both revocation
stores and the profile cache.
"""
import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from jose import jwt

from common.errors import (
    BatchNotFound,
    InvalidRefreshToken,
    LedgerUnavailable,
    RevocationStoreUnavailable,
    StakeholderNotFound,
    TokenExpired,
    TokenInvalid,
    TokenRevoked,
)
from identity.profile_cache import ProfileCache
from identity.revocation import MemoryRevocationStore, SqlRevocationStore
from identity.tokens import AUDIENCE, ISSUER, TokenManager
from ledger.models import Role, Stakeholder

SUBJECT = "0x" + "1" * 40
OTHER = "0x" + "2" * 40


def _stakeholder(address=SUBJECT, role=Role.MANUFACTURER, verified=True):
    return Stakeholder(
        address=address,
        name="Acme Pharma",
        license_number="MFG-001",
        role=role,
        is_verified=verified,
        registered_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
    )


@pytest.fixture()
def manager():
    return TokenManager("access-secret", "refresh-secret")


class TestIssueAndVerify:
    def test_issue_returns_distinct_tokens(self, manager):
        pair = manager.issue(SUBJECT, Role.MANUFACTURER)
        assert pair.access_token != pair.refresh_token
        assert pair.expires_in == 24 * 3600

    def test_verify_round_trip_claims(self, manager):
        pair = manager.issue(SUBJECT, Role.MANUFACTURER, {"isVerified": True, "name": "Acme"})
        claims = manager.verify(pair.access_token)
        assert claims.subject == SUBJECT
        assert claims.role is Role.MANUFACTURER
        assert claims.is_verified is True
        assert claims.name == "Acme"
        assert claims.token_type == "access"
        assert len(claims.jti) == 32

    def test_subject_is_normalized(self, manager):
        pair = manager.issue(SUBJECT.upper().replace("0X", "0x"), Role.RETAILER)
        assert manager.verify(pair.access_token).subject == SUBJECT

    def test_each_token_has_unique_jti(self, manager):
        jtis = {manager.verify(manager.issue(SUBJECT, Role.RETAILER).access_token).jti for _ in range(20)}
        assert len(jtis) == 20

    def test_standard_claims_present(self, manager):
        pair = manager.issue(SUBJECT, Role.REGULATOR)
        payload = jwt.get_unverified_claims(pair.access_token)
        assert payload["iss"] == ISSUER
        assert payload["aud"] == AUDIENCE
        assert payload["typ"] == "access"
        assert payload["exp"] > payload["iat"]

    def test_garbage_token_is_invalid(self, manager):
        with pytest.raises(TokenInvalid):
            manager.verify("not-a-jwt")

    def test_wrong_secret_is_invalid(self, manager):
        other = TokenManager("other-secret", "other-refresh")
        pair = other.issue(SUBJECT, Role.MANUFACTURER)
        with pytest.raises(TokenInvalid):
            manager.verify(pair.access_token)

    def test_expired_token(self):
        manager = TokenManager("access-secret", "refresh-secret", access_ttl=timedelta(seconds=-10))
        pair = manager.issue(SUBJECT, Role.MANUFACTURER)
        with pytest.raises(TokenExpired):
            manager.verify(pair.access_token)

    def test_refresh_token_rejected_as_access(self, manager):
        pair = manager.issue(SUBJECT, Role.MANUFACTURER)
        with pytest.raises(TokenInvalid):
            manager.verify(pair.refresh_token)

    def test_challenge_token_rejected_as_access(self, manager):
        challenge = manager.issue_challenge(SUBJECT)
        with pytest.raises(TokenInvalid):
            manager.verify(challenge.token)

    def test_unknown_role_claim_becomes_none(self, manager):
        now = int(datetime.now(timezone.utc).timestamp())
        token = jwt.encode({
            "sub": SUBJECT, "role": "Wizard", "typ": "access", "jti": "x" * 32,
            "iss": ISSUER, "aud": AUDIENCE, "iat": now, "exp": now + 60,
        }, "access-secret", algorithm="HS256")
        assert manager.verify(token).role is None

    def test_missing_jti_is_invalid(self, manager):
        now = int(datetime.now(timezone.utc).timestamp())
        token = jwt.encode({
            "sub": SUBJECT, "role": "Manufacturer", "typ": "access",
            "iss": ISSUER, "aud": AUDIENCE, "iat": now, "exp": now + 60,
        }, "access-secret", algorithm="HS256")
        with pytest.raises(TokenInvalid):
            manager.verify(token)

    def test_equal_secrets_refused(self):
        with pytest.raises(ValueError):
            TokenManager("same", "same")


class TestRevocation:
    def test_revoked_token_fails_verification(self, manager):
        pair = manager.issue(SUBJECT, Role.MANUFACTURER)
        assert manager.revoke(pair.access_token) is True
        with pytest.raises(TokenRevoked):
            manager.verify(pair.access_token)

    def test_revoke_is_idempotent(self, manager):
        pair = manager.issue(SUBJECT, Role.MANUFACTURER)
        manager.revoke(pair.access_token)
        manager.revoke(pair.access_token)
        assert len(manager.revocations) == 1

    def test_revocation_is_monotonic(self, manager):
        """Once revoked, a token stays revoked through later revocations and purges."""
        pair = manager.issue(SUBJECT, Role.MANUFACTURER)
        manager.revoke(pair.access_token)
        for _ in range(5):
            manager.revoke(manager.issue(OTHER, Role.RETAILER).access_token)
            manager.revocations.purge_expired()
            with pytest.raises(TokenRevoked):
                manager.verify(pair.access_token)

    def test_revoking_one_token_leaves_others_valid(self, manager):
        first = manager.issue(SUBJECT, Role.MANUFACTURER)
        second = manager.issue(SUBJECT, Role.MANUFACTURER)
        manager.revoke(first.access_token)
        assert manager.verify(second.access_token).subject == SUBJECT

    def test_revoke_only_for_matching_subject(self, manager):
        pair = manager.issue(SUBJECT, Role.MANUFACTURER)
        with pytest.raises(TokenInvalid):
            manager.revoke(pair.refresh_token, subject=OTHER)
        assert len(manager.revocations) == 0
        assert manager.revoke(pair.refresh_token, subject=SUBJECT.upper().replace("0X", "0x")) is True

    def test_concurrent_revoke_and_verify(self, manager):
        pair = manager.issue(SUBJECT, Role.MANUFACTURER)
        others = [manager.issue(OTHER, Role.RETAILER) for _ in range(8)]
        start = threading.Barrier(16)
        errors = []

        def revoke(token):
            start.wait()
            manager.revoke(token)

        def verify(token):
            start.wait()
            try:
                manager.verify(token)
            except TokenRevoked:
                pass
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=revoke, args=(pair.access_token,)) for _ in range(4)]
        threads += [threading.Thread(target=verify, args=(pair.access_token,)) for _ in range(4)]
        threads += [threading.Thread(target=revoke, args=(o.access_token,)) for o in others]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len(manager.revocations) == 9
        with pytest.raises(TokenRevoked):
            manager.verify(pair.access_token)

    def test_expired_token_revoke_is_noop(self):
        manager = TokenManager("access-secret", "refresh-secret", access_ttl=timedelta(seconds=-10))
        pair = manager.issue(SUBJECT, Role.MANUFACTURER)
        assert manager.revoke(pair.access_token) is False
        assert len(manager.revocations) == 0

    def test_refresh_token_can_be_revoked(self, manager):
        pair = manager.issue(SUBJECT, Role.MANUFACTURER)
        manager.revoke(pair.refresh_token)
        with pytest.raises(InvalidRefreshToken):
            manager.refresh(pair.refresh_token, lambda a: _stakeholder())

    def test_revoke_garbage_is_invalid(self, manager):
        with pytest.raises(TokenInvalid):
            manager.revoke("garbage")

    def test_unreachable_store_degrades_to_structural_check(self):
        store = MagicMock()
        store.contains.side_effect = RevocationStoreUnavailable()
        manager = TokenManager("access-secret", "refresh-secret", revocations=store)
        pair = manager.issue(SUBJECT, Role.MANUFACTURER)
        assert manager.verify(pair.access_token).subject == SUBJECT


class TestRefresh:
    def test_refresh_reissues_with_current_profile(self, manager):
        pair = manager.issue(SUBJECT, Role.MANUFACTURER, {"isVerified": False})
        refreshed = manager.refresh(pair.refresh_token, lambda a: _stakeholder(a, verified=True))
        claims = manager.verify(refreshed.access_token)
        assert claims.is_verified is True
        assert claims.role is Role.MANUFACTURER
        assert refreshed.refresh_token == pair.refresh_token

    def test_access_token_is_not_a_refresh_token(self, manager):
        pair = manager.issue(SUBJECT, Role.MANUFACTURER)
        with pytest.raises(InvalidRefreshToken):
            manager.refresh(pair.access_token, lambda a: _stakeholder())

    def test_expired_refresh_token(self):
        manager = TokenManager("access-secret", "refresh-secret", refresh_ttl=timedelta(seconds=-5))
        pair = manager.issue(SUBJECT, Role.MANUFACTURER)
        with pytest.raises(InvalidRefreshToken):
            manager.refresh(pair.refresh_token, lambda a: _stakeholder())

    def test_subject_gone_from_ledger(self, manager):
        pair = manager.issue(SUBJECT, Role.MANUFACTURER)

        def lookup(address):
            raise StakeholderNotFound()

        with pytest.raises(InvalidRefreshToken):
            manager.refresh(pair.refresh_token, lookup)

    def test_ledger_outage_propagates(self, manager):
        pair = manager.issue(SUBJECT, Role.MANUFACTURER)

        def lookup(address):
            raise LedgerUnavailable()

        with pytest.raises(LedgerUnavailable):
            manager.refresh(pair.refresh_token, lookup)


class TestChallenge:
    def test_challenge_message_names_address(self, manager):
        challenge = manager.issue_challenge(SUBJECT)
        assert SUBJECT in challenge.message
        assert manager.verify_challenge(challenge.token, SUBJECT) == challenge.message

    def test_challenge_for_other_address_rejected(self, manager):
        challenge = manager.issue_challenge(SUBJECT)
        with pytest.raises(TokenInvalid):
            manager.verify_challenge(challenge.token, OTHER)

    def test_challenges_are_unique(self, manager):
        assert manager.issue_challenge(SUBJECT).message != manager.issue_challenge(SUBJECT).message

    def test_access_token_is_not_a_challenge(self, manager):
        pair = manager.issue(SUBJECT, Role.MANUFACTURER)
        with pytest.raises(TokenInvalid):
            manager.verify_challenge(pair.access_token, SUBJECT)


class TestMemoryRevocationStore:
    def test_add_and_contains(self):
        store = MemoryRevocationStore()
        store.add("jti-1", datetime.now(timezone.utc) + timedelta(hours=1))
        assert store.contains("jti-1")
        assert not store.contains("jti-2")

    def test_purge_only_drops_expired(self):
        now = datetime(2024, 6, 1, tzinfo=timezone.utc)
        store = MemoryRevocationStore(clock=lambda: now)
        store.add("old", now - timedelta(seconds=1))
        store.add("live", now + timedelta(hours=1))
        assert store.purge_expired() == 1
        assert not store.contains("old")
        assert store.contains("live")

    def test_first_expiry_wins(self):
        now = datetime(2024, 6, 1, tzinfo=timezone.utc)
        store = MemoryRevocationStore(clock=lambda: now)
        store.add("jti", now + timedelta(hours=1))
        store.add("jti", now - timedelta(hours=1))
        store.purge_expired()
        assert store.contains("jti")


class TestSqlRevocationStore:
    @pytest.fixture()
    def store(self, tmp_path):
        s = SqlRevocationStore(f"sqlite:///{tmp_path / 'revoked.db'}", create_tables=True)
        yield s
        s.dispose()

    def test_add_and_contains(self, store):
        store.add("jti-1", datetime.now(timezone.utc) + timedelta(hours=1), subject=SUBJECT)
        assert store.contains("jti-1")
        assert not store.contains("jti-2")

    def test_add_twice_is_idempotent(self, store):
        exp = datetime.now(timezone.utc) + timedelta(hours=1)
        store.add("jti-1", exp)
        store.add("jti-1", exp)
        assert store.contains("jti-1")

    def test_purge_expired(self, store):
        now = datetime.now(timezone.utc)
        store.add("old", now - timedelta(hours=1))
        store.add("live", now + timedelta(hours=1))
        assert store.purge_expired() == 1
        assert store.contains("live")
        assert not store.contains("old")

    def test_ping(self, store):
        assert store.ping() is True

    def test_missing_table_is_unavailable(self, tmp_path):
        store = SqlRevocationStore(f"sqlite:///{tmp_path / 'empty.db'}")
        with pytest.raises(RevocationStoreUnavailable):
            store.contains("jti")
        store.dispose()

    def test_token_manager_over_sql_store(self, store):
        manager = TokenManager("access-secret", "refresh-secret", revocations=store)
        pair = manager.issue(SUBJECT, Role.MANUFACTURER)
        manager.revoke(pair.access_token)
        with pytest.raises(TokenRevoked):
            manager.verify(pair.access_token)


class TestProfileCache:
    def test_cache_aside_loads_once(self):
        loader = MagicMock(return_value=_stakeholder())
        cache = ProfileCache(loader, ttl_seconds=60)
        assert cache.get(SUBJECT).name == "Acme Pharma"
        assert cache.get(SUBJECT).name == "Acme Pharma"
        loader.assert_called_once_with(SUBJECT)
        assert cache.stats()["hits"] == 1

    def test_entry_expires_after_ttl(self):
        now = [1000.0]
        loader = MagicMock(return_value=_stakeholder())
        cache = ProfileCache(loader, ttl_seconds=60, clock=lambda: now[0])
        cache.get(SUBJECT)
        now[0] += 61
        cache.get(SUBJECT)
        assert loader.call_count == 2

    def test_invalidate_forces_reload(self):
        loader = MagicMock(side_effect=[_stakeholder(verified=False), _stakeholder(verified=True)])
        cache = ProfileCache(loader)
        assert cache.get(SUBJECT).is_verified is False
        cache.invalidate(SUBJECT)
        assert cache.get(SUBJECT).is_verified is True

    def test_loader_errors_propagate_and_are_not_cached(self):
        loader = MagicMock(side_effect=[LedgerUnavailable(), _stakeholder()])
        cache = ProfileCache(loader)
        with pytest.raises(LedgerUnavailable):
            cache.get(SUBJECT)
        assert cache.get(SUBJECT).address == SUBJECT

    def test_purge_expired(self):
        now = [0.0]
        cache = ProfileCache(MagicMock(), ttl_seconds=10, clock=lambda: now[0])
        cache.put(_stakeholder(SUBJECT))
        cache.put(_stakeholder(OTHER))
        now[0] = 11
        assert cache.purge_expired() == 2
        assert cache.peek(SUBJECT) is None

    def test_concurrent_access(self):
        addresses = ["0x" + format(i, "040x") for i in range(1, 9)]
        cache = ProfileCache(lambda address: _stakeholder(address), ttl_seconds=60)
        start = threading.Barrier(len(addresses) * 2)
        mismatches = []

        def reader(address):
            start.wait()
            for _ in range(50):
                if cache.get(address).address != address:
                    mismatches.append(address)

        def invalidator(address):
            start.wait()
            for _ in range(50):
                cache.invalidate(address)

        threads = [threading.Thread(target=reader, args=(a,)) for a in addresses]
        threads += [threading.Thread(target=invalidator, args=(a,)) for a in addresses]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert mismatches == []
        stats = cache.stats()
        assert stats["hits"] + stats["misses"] == len(addresses) * 50
        assert all(cache.get(a).address == a for a in addresses)

    def test_unrelated_error_types_untouched(self):
        cache = ProfileCache(MagicMock(side_effect=BatchNotFound()))
        with pytest.raises(BatchNotFound):
            cache.get(SUBJECT)


if __name__ == "__main__":
    import subprocess, sys
    sys.exit(subprocess.call(["pytest", __file__, "-v"]))
