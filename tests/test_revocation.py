"""Unit tests for auth/revocation.py -- the refresh-token ledger.

Covers:
- unknown jti reads as revoked (fail closed)
- revoke() returns True exactly once per jti
- rotate() consumes the old jti and records the successor atomically
- rotate() on a consumed jti records nothing
- revoke_family() and revoke_all() scope
- sweep_expired() deletes expired rows (revoked or not) and nothing else
"""

from datetime import timedelta

from auth.models import RefreshTokenRecord


def _record(clock, jti: str, principal_id: int = 1, family: str = "fam-a", days: int = 30) -> RefreshTokenRecord:
    return RefreshTokenRecord(
        jti=jti,
        principal_id=principal_id,
        family_id=family,
        tenant_id=1,
        expires_at=clock() + timedelta(days=days),
    )


class TestRevoke:
    def test_unknown_jti_is_revoked(self, revocations):
        assert revocations.is_revoked("never-issued") is True

    def test_persisted_jti_is_live(self, revocations, clock):
        revocations.persist(_record(clock, "j1"))
        assert revocations.is_revoked("j1") is False

    def test_revoke_flips_once(self, revocations, clock):
        revocations.persist(_record(clock, "j1"))
        assert revocations.revoke("j1") is True
        assert revocations.revoke("j1") is False
        assert revocations.is_revoked("j1") is True

    def test_revoke_unknown_returns_false(self, revocations):
        assert revocations.revoke("nope") is False


class TestRotate:
    def test_rotate_consumes_and_records_successor(self, revocations, clock):
        revocations.persist(_record(clock, "j1"))
        assert revocations.rotate("j1", _record(clock, "j2")) is True
        assert revocations.is_revoked("j1") is True
        assert revocations.is_revoked("j2") is False
        assert revocations.get("j2").family_id == "fam-a"

    def test_second_rotate_records_nothing(self, revocations, clock):
        revocations.persist(_record(clock, "j1"))
        assert revocations.rotate("j1", _record(clock, "j2")) is True
        assert revocations.rotate("j1", _record(clock, "j3")) is False
        assert revocations.get("j3") is None

    def test_rotate_unknown_jti(self, revocations, clock):
        assert revocations.rotate("ghost", _record(clock, "j2")) is False
        assert revocations.get("j2") is None


class TestBulkRevocation:
    def test_revoke_family_only_touches_that_family(self, revocations, clock):
        revocations.persist(_record(clock, "a1", family="fam-a"))
        revocations.persist(_record(clock, "a2", family="fam-a"))
        revocations.persist(_record(clock, "b1", family="fam-b"))
        assert revocations.revoke_family("fam-a") == 2
        assert revocations.is_revoked("b1") is False

    def test_revoke_all_for_principal(self, revocations, clock):
        revocations.persist(_record(clock, "a1", principal_id=1, family="fam-a"))
        revocations.persist(_record(clock, "b1", principal_id=1, family="fam-b"))
        revocations.persist(_record(clock, "c1", principal_id=2, family="fam-c"))
        assert revocations.revoke_all(1) == 2
        assert revocations.is_revoked("c1") is False


class TestSweep:
    def test_sweep_deletes_only_expired(self, revocations, clock):
        revocations.persist(_record(clock, "short", days=1))
        revocations.persist(_record(clock, "short-revoked", days=1))
        revocations.revoke("short-revoked")
        revocations.persist(_record(clock, "long", days=30))
        clock.advance(days=2)
        assert revocations.sweep_expired() == 2
        assert revocations.get("short") is None
        assert revocations.get("long") is not None
        assert revocations.sweep_expired() == 0

    def test_swept_jti_reads_as_revoked(self, revocations, clock):
        revocations.persist(_record(clock, "short", days=1))
        clock.advance(days=2)
        revocations.sweep_expired()
        assert revocations.is_revoked("short") is True
