"""
tests/test_dependencies.py -- Tests for the FastAPI dependency factories in auth/dependencies.py.

A minimal app mounts one route per dependency so each can be checked in
isolation from the real routers. AuthError is mapped with the production
handler from api/main.py.
"""

from __future__ import annotations

import uuid

import pytest
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

from api.main import auth_error_handler
from auth.dependencies import get_identity, require_permissions, require_role
from auth.errors import AuthError
from auth.models import Account, ResolvedIdentity
from auth.passwords import hash_secret
from auth.permissions import Role
from auth.service import AuthService
from auth.store import AuthStore

PASSWORD = "Correct#Horse1"


@pytest.fixture
def harness(settings):
    store = AuthStore(f"sqlite:///file:test_deps_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true")
    service = AuthService(store, settings)

    app = FastAPI()
    app.state.auth_service = service
    app.add_exception_handler(AuthError, auth_error_handler)

    @app.get("/any")
    def any_account(identity: ResolvedIdentity = Depends(get_identity)) -> dict:
        return {"role": identity.role.value}

    @app.get("/staff")
    def staff_only(identity: ResolvedIdentity = Depends(require_role(Role.STAFF))) -> dict:
        return {"role": identity.role.value}

    @app.get("/cases")
    def cases(
        identity: ResolvedIdentity = Depends(require_permissions("case:read", "case:delete", require_all=True)),
    ) -> dict:
        return {"role": identity.role.value}

    def token_for(role: Role) -> dict[str, str]:
        account = store.create_account(
            Account(email=f"{role.value}@example.com", hashed_secret=hash_secret(PASSWORD, 4), role=role)
        )
        return {"Authorization": f"Bearer {service.tokens.issue_access_token(account).token}"}

    with TestClient(app) as client:
        yield client, token_for
    store.close()


def test_get_identity_accepts_any_active_account(harness) -> None:
    client, token_for = harness
    resp = client.get("/any", headers=token_for(Role.CLIENT))
    assert resp.status_code == 200
    assert resp.json() == {"role": "client"}


def test_bearer_scheme_is_case_insensitive(harness) -> None:
    client, token_for = harness
    token = token_for(Role.CLIENT)["Authorization"].split(" ", 1)[1]
    assert client.get("/any", headers={"Authorization": f"bearer {token}"}).status_code == 200


def test_require_role(harness) -> None:
    client, token_for = harness
    assert client.get("/staff", headers=token_for(Role.ADVOCATE)).status_code == 200
    resp = client.get("/staff", headers=token_for(Role.CLIENT))
    assert resp.status_code == 403
    assert resp.json()["error"]["detail"]["required_role"] == "staff"


def test_require_all_permissions(harness) -> None:
    client, token_for = harness
    assert client.get("/cases", headers=token_for(Role.ADMIN)).status_code == 200
    resp = client.get("/cases", headers=token_for(Role.ADVOCATE))
    assert resp.status_code == 403
    assert resp.json()["error"]["detail"]["missing_permissions"] == ["case:delete"]


def test_missing_header(harness) -> None:
    client, _ = harness
    resp = client.get("/any")
    assert resp.status_code == 401
    assert resp.json()["error"]["message"] == "Authentication required."
