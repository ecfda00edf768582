"""Bearer extraction, role gating and the vendor approval gate."""

import pytest

from accountgate.service.errors import (
    ForbiddenError,
    InvalidOrRevokedTokenError,
    NotApprovedError,
)
from accountgate.service.gates import extract_bearer
from accountgate.storage.models import Role

PASSWORD = "CorrectHorse9"


async def _session(auth, role, email="ada@example.com", **kwargs):
    await auth.provision_account(role, email, PASSWORD, {"business_name": "Shop"}, **kwargs)
    account, tokens = await auth.login(role, email, PASSWORD)
    return account, f"Bearer {tokens.access_token}", tokens


@pytest.mark.parametrize(
    "header, expected",
    [
        ("Bearer abc.def.ghi", "abc.def.ghi"),
        ("bearer   abc ", "abc"),
        ("Basic abc", None),
        ("Bearer", None),
        ("Bearer   ", None),
        ("", None),
        (None, None),
    ],
)
def test_extract_bearer(header, expected):
    assert extract_bearer(header) == expected


async def test_authorize_returns_context(auth):
    account, header, _ = await _session(auth, Role.USER)
    ctx = await auth.authorize(header)
    assert ctx.account_id == account.id
    assert ctx.role == Role.USER
    assert ctx.claims.email == "ada@example.com"


async def test_missing_header_is_unauthorized(auth):
    with pytest.raises(InvalidOrRevokedTokenError) as excinfo:
        await auth.authorize(None)
    assert excinfo.value.status_code == 401


async def test_role_outside_allowed_set_is_forbidden(auth):
    _, header, _ = await _session(auth, Role.USER)
    with pytest.raises(ForbiddenError) as excinfo:
        await auth.authorize(header, [Role.ADMIN])
    assert excinfo.value.status_code == 403
    ctx = await auth.authorize(header, [Role.USER, Role.ADMIN])
    assert ctx.role == Role.USER


async def test_refresh_token_is_not_an_access_token(auth):
    _, _, tokens = await _session(auth, Role.USER)
    with pytest.raises(InvalidOrRevokedTokenError):
        await auth.authorize(f"Bearer {tokens.refresh_token}")


async def test_revoked_token_is_rejected(auth):
    _, header, _ = await _session(auth, Role.USER)
    await auth.logout(header)
    with pytest.raises(InvalidOrRevokedTokenError):
        await auth.authorize(header)


async def test_token_for_deleted_account_is_rejected(auth):
    account, header, _ = await _session(auth, Role.USER)
    auth.delete_account(Role.USER, account.id)
    with pytest.raises(InvalidOrRevokedTokenError):
        await auth.authorize(header)


async def test_token_for_deactivated_account_is_rejected(auth):
    account, header, _ = await _session(auth, Role.USER)
    auth.store.update_account(Role.USER, account.id, is_active=False)
    with pytest.raises(InvalidOrRevokedTokenError):
        await auth.authorize(header)


async def test_approval_gate_blocks_unapproved_vendor(auth):
    _, header, _ = await _session(auth, Role.VENDOR, "shop@example.com")
    ctx = await auth.authorize(header, [Role.VENDOR])
    with pytest.raises(NotApprovedError) as excinfo:
        auth.require_approved_vendor(ctx)
    assert excinfo.value.error_code == "not_approved"


async def test_approval_gate_reads_current_state(auth):
    vendor, header, _ = await _session(auth, Role.VENDOR, "shop@example.com")
    await auth.set_vendor_approval(vendor.id, True)
    await auth.tasks.drain()
    ctx = await auth.authorize(header, [Role.VENDOR])
    assert auth.require_approved_vendor(ctx).id == vendor.id


async def test_approval_gate_rejects_other_roles(auth):
    _, header, _ = await _session(auth, Role.USER)
    ctx = await auth.authorize(header)
    with pytest.raises(ForbiddenError):
        auth.require_approved_vendor(ctx)


async def test_rotate_csrf_consumes_and_replaces(auth):
    _, header, tokens = await _session(auth, Role.ADMIN, "root@example.com")
    ctx = await auth.authorize(header, [Role.ADMIN])
    fresh = await auth.rotate_csrf(ctx, tokens.csrf_token)
    assert fresh != tokens.csrf_token
    with pytest.raises(ForbiddenError) as excinfo:
        await auth.rotate_csrf(ctx, tokens.csrf_token)
    assert excinfo.value.error_code == "csrf_invalid"
    await auth.rotate_csrf(ctx, fresh)
