"""Login ordering and the per-role side effects of a successful login."""

import pytest

from accountgate.service.credentials import (
    LOGIN_POLICIES,
    hash_password,
    verify_password,
)
from accountgate.service.errors import (
    InvalidCredentialsError,
    NotFoundError,
    NotVerifiedError,
)
from accountgate.storage.models import VENDOR_ACTIVE, VENDOR_INACTIVE, Role

PASSWORD = "CorrectHorse9"


def test_hash_and_verify_password():
    stored, algo = hash_password(PASSWORD)
    assert algo == "argon2id"
    assert stored.startswith("$argon2id$")
    assert verify_password(stored, PASSWORD)
    assert not verify_password(stored, "wrong-password")
    assert not verify_password("not-a-hash", PASSWORD)


def test_login_policies_cover_every_role():
    assert set(LOGIN_POLICIES) == set(Role)
    assert LOGIN_POLICIES[Role.VENDOR].activate_on_login
    assert not LOGIN_POLICIES[Role.VENDOR].record_login_event
    assert all(policy.require_verified for policy in LOGIN_POLICIES.values())


def _unverified(auth, role=Role.USER, email="ada@example.com"):
    account = auth.store.create_account(role, email, is_verified=False)
    stored, algo = hash_password(PASSWORD)
    auth.store.save_password(account.id, stored, algo)
    return account


async def test_unknown_account_is_not_found(auth):
    with pytest.raises(NotFoundError):
        await auth.login(Role.USER, "ghost@example.com", PASSWORD)


async def test_password_checked_before_verification(auth):
    _unverified(auth)
    with pytest.raises(InvalidCredentialsError):
        await auth.login(Role.USER, "ada@example.com", "wrong-password")
    with pytest.raises(NotVerifiedError) as excinfo:
        await auth.login(Role.USER, "ada@example.com", PASSWORD)
    assert excinfo.value.status_code == 403


async def test_unverified_admin_cannot_log_in(auth):
    _unverified(auth, Role.ADMIN, "root@example.com")
    with pytest.raises(NotVerifiedError):
        await auth.login(Role.ADMIN, "root@example.com", PASSWORD)


async def test_login_email_is_normalized(auth):
    await auth.provision_account(Role.USER, "ada@example.com", PASSWORD)
    account, _ = await auth.login(Role.USER, "  ADA@example.COM", PASSWORD)
    assert account.email == "ada@example.com"


async def test_user_login_records_event_and_timestamp(auth, clock):
    await auth.provision_account(Role.USER, "ada@example.com", PASSWORD)
    account, _ = await auth.login(
        Role.USER, "ada@example.com", PASSWORD, ip="10.0.0.1", user_agent="pytest"
    )
    await auth.tasks.drain()
    assert account.last_login_at.timestamp() == clock.now
    events = auth.store.list_login_events(account.id)
    assert len(events) == 1
    assert (events[0].ip, events[0].user_agent, events[0].role) == ("10.0.0.1", "pytest", Role.USER)


async def test_vendor_login_activates_without_event(auth):
    vendor = await auth.provision_account(Role.VENDOR, "shop@example.com", PASSWORD)
    assert vendor.status == VENDOR_INACTIVE
    account, _ = await auth.login(Role.VENDOR, "shop@example.com", PASSWORD)
    await auth.tasks.drain()
    assert account.status == VENDOR_ACTIVE
    assert auth.store.list_login_events(account.id) == []


async def test_audit_failure_does_not_fail_login(auth, monkeypatch):
    await auth.provision_account(Role.ADMIN, "root@example.com", PASSWORD)

    def _boom(event):
        raise RuntimeError("audit sink down")

    monkeypatch.setattr(auth.store, "record_login_event", _boom)
    account, tokens = await auth.login(Role.ADMIN, "root@example.com", PASSWORD)
    await auth.tasks.drain()
    assert tokens.access_token
    assert len(auth.tasks) == 0


async def test_foreign_password_algorithm_is_refused(auth):
    account = await auth.provision_account(Role.USER, "ada@example.com", PASSWORD)
    stored, _ = hash_password(PASSWORD)
    auth.store.save_password(account.id, stored, "bcrypt")
    with pytest.raises(InvalidCredentialsError):
        await auth.login(Role.USER, "ada@example.com", PASSWORD)


async def test_change_password_requires_current_password(auth):
    await auth.provision_account(Role.USER, "ada@example.com", PASSWORD)
    _, tokens = await auth.login(Role.USER, "ada@example.com", PASSWORD)
    ctx = await auth.authorize(f"Bearer {tokens.access_token}")

    with pytest.raises(InvalidCredentialsError) as excinfo:
        await auth.change_password(ctx, "not-my-password", "BrandNewPass1")
    assert excinfo.value.status_code == 400
    # A rejected change leaves the old password in place
    await auth.login(Role.USER, "ada@example.com", PASSWORD)

    await auth.change_password(ctx, PASSWORD, "BrandNewPass1")
    with pytest.raises(InvalidCredentialsError):
        await auth.login(Role.USER, "ada@example.com", PASSWORD)
    account, _ = await auth.login(Role.USER, "ada@example.com", "BrandNewPass1")
    assert account.id == ctx.account_id
