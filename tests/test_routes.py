"""
HTTP tests for the permissions API.

Authorization data comes from the default matrix (the `seeded` fixture), so
admins may mutate it, HR may inspect overrides, and employees may do
neither.
"""
from datetime import timedelta

import pytest

from app.features.permissions import routes as permission_routes
from app.features.users import dependencies as user_dependencies
from app.features.users.models import UserRole
from conftest import auth_headers, make_token


async def permission_id(client, api_url, headers, resource: str, action: str) -> int:
    resources = (await client.get(api_url("/resources"), headers=headers)).json()
    resource_id = next(r["id"] for r in resources if r["name"] == resource)
    permissions = (await client.get(api_url(f"/resources/{resource_id}/permissions"), headers=headers)).json()
    return next(p["id"] for p in permissions if p["action"] == action)


async def check_mine(client, api_url, user, resource: str, action: str) -> bool:
    response = await client.post(
        api_url("/check-my-permission"),
        json={"resource": resource, "action": action},
        headers=auth_headers(user),
    )
    assert response.status_code == 200
    return response.json()["hasPermission"]


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


# Authentication

@pytest.mark.asyncio
async def test_missing_token_is_unauthorized(client, api_url):
    response = await client.get(api_url("/resources"))
    assert response.status_code == 401
    assert response.headers["www-authenticate"] == "Bearer"


@pytest.mark.asyncio
async def test_bad_and_expired_tokens_are_unauthorized(client, api_url, make_user):
    user = await make_user()
    expired = make_token(user.external_id, expires_in=timedelta(minutes=-5))

    bad = await client.get(api_url("/resources"), headers={"Authorization": "Bearer not-a-jwt"})
    old = await client.get(api_url("/resources"), headers={"Authorization": f"Bearer {expired}"})

    assert bad.status_code == 401
    assert old.status_code == 401


@pytest.mark.asyncio
async def test_first_login_provisions_employee(client, api_url):
    token = make_token("idp|new-person", email="new.person@proxa.test", name="New Person")

    response = await client.get(api_url("/users/me"), headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 200
    body = response.json()
    assert body["email"] == "new.person@proxa.test"
    assert body["first_name"] == "New"
    assert body["role"] == "employee"


@pytest.mark.asyncio
async def test_unknown_subject_without_email_is_unauthorized(client, api_url):
    token = make_token("idp|ghost")
    response = await client.get(api_url("/users/me"), headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_deactivated_user_is_unauthorized(client, api_url, make_user):
    user = await make_user(is_active=False)
    response = await client.get(api_url("/users/me"), headers=auth_headers(user))
    assert response.status_code == 401


# Mutation gating

@pytest.mark.asyncio
async def test_employee_cannot_create_resource(client, api_url, make_user, seeded):
    employee = await make_user(UserRole.EMPLOYEE)

    response = await client.post(
        api_url("/resources"),
        json={"name": "wiki", "displayName": "Wiki"},
        headers=auth_headers(employee),
    )

    assert response.status_code == 403
    body = response.json()
    assert body["detail"] == "Missing permission: create on resources"
    assert body["required"] == {"resource": "resources", "action": "create"}


@pytest.mark.asyncio
async def test_admin_manages_resources(client, api_url, make_user, seeded):
    admin = await make_user(UserRole.ADMIN)
    headers = auth_headers(admin)

    created = await client.post(
        api_url("/resources"),
        json={"name": "wiki", "displayName": "Wiki", "description": "Internal docs"},
        headers=headers,
    )
    duplicate = await client.post(
        api_url("/resources"), json={"name": "wiki", "displayName": "Wiki"}, headers=headers
    )
    malformed = await client.post(
        api_url("/resources"), json={"name": "Wiki Pages", "displayName": "Wiki"}, headers=headers
    )

    assert created.status_code == 201
    assert created.json()["displayName"] == "Wiki"
    assert "createdAt" in created.json()
    assert duplicate.status_code == 409
    assert malformed.status_code == 400

    resource_id = created.json()["id"]
    fetched = await client.get(api_url(f"/resources/{resource_id}"), headers=headers)
    assert fetched.json()["name"] == "wiki"

    deleted = await client.delete(api_url(f"/resources/{resource_id}"), headers=headers)
    assert deleted.status_code == 204
    missing = await client.get(api_url(f"/resources/{resource_id}"), headers=headers)
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_delete_referenced_resource_conflicts(client, api_url, make_user, seeded):
    admin = await make_user(UserRole.ADMIN)
    headers = auth_headers(admin)
    resources = (await client.get(api_url("/resources"), headers=headers)).json()
    goals_id = next(r["id"] for r in resources if r["name"] == "goals")

    response = await client.delete(api_url(f"/resources/{goals_id}"), headers=headers)

    assert response.status_code == 409
    assert response.json()["dependents"] == 5


@pytest.mark.asyncio
async def test_admin_catalogs_permissions(client, api_url, make_user, seeded):
    admin = await make_user(UserRole.ADMIN)
    headers = auth_headers(admin)
    resource = (await client.post(
        api_url("/resources"), json={"name": "wiki", "displayName": "Wiki"}, headers=headers
    )).json()

    created = await client.post(
        api_url("/permissions"), json={"resourceId": resource["id"], "action": "VIEW"}, headers=headers
    )
    duplicate = await client.post(
        api_url("/permissions"), json={"resourceId": resource["id"], "action": "view"}, headers=headers
    )
    bad_action = await client.post(
        api_url("/permissions"), json={"resourceId": resource["id"], "action": "fly"}, headers=headers
    )
    no_resource = await client.post(
        api_url("/permissions"), json={"resourceId": 9999, "action": "view"}, headers=headers
    )

    assert created.status_code == 201
    assert created.json()["action"] == "view"
    assert created.json()["description"] == "View access to Wiki"
    assert duplicate.status_code == 409
    assert bad_action.status_code == 400
    assert no_resource.status_code == 404

    fetched = await client.get(api_url(f"/permissions/{created.json()['id']}"), headers=headers)
    assert fetched.json()["resourceId"] == resource["id"]


@pytest.mark.asyncio
async def test_delete_referenced_permission_conflicts(client, api_url, make_user, seeded):
    admin = await make_user(UserRole.ADMIN)
    headers = auth_headers(admin)
    goals_view = await permission_id(client, api_url, headers, "goals", "view")

    response = await client.delete(api_url(f"/permissions/{goals_view}"), headers=headers)

    assert response.status_code == 409
    assert response.json()["role_bindings"] == 4


# Role bindings

@pytest.mark.asyncio
async def test_role_binding_round_trip(client, api_url, make_user, seeded):
    admin = await make_user(UserRole.ADMIN)
    employee = await make_user(UserRole.EMPLOYEE)
    headers = auth_headers(admin)
    analytics_view = await permission_id(client, api_url, headers, "analytics", "view")
    assert await check_mine(client, api_url, employee, "analytics", "view") is False

    bound = await client.post(
        api_url("/role-permissions"),
        json={"role": "employee", "permissionId": analytics_view},
        headers=headers,
    )
    duplicate = await client.post(
        api_url("/role-permissions"),
        json={"role": "employee", "permissionId": analytics_view},
        headers=headers,
    )

    assert bound.status_code == 201
    assert bound.json()["role"] == "employee"
    assert duplicate.status_code == 409
    assert await check_mine(client, api_url, employee, "analytics", "view") is True

    listed = (await client.get(api_url("/roles/employee/permissions"), headers=headers)).json()
    assert any(
        b["permission"]["resource"]["name"] == "analytics" and b["permission"]["action"] == "view"
        for b in listed
    )

    removed = await client.delete(api_url(f"/role-permissions/{bound.json()['id']}"), headers=headers)
    assert removed.status_code == 204
    assert await check_mine(client, api_url, employee, "analytics", "view") is False


@pytest.mark.asyncio
async def test_role_binding_requires_permission(client, api_url, make_user, seeded):
    hr = await make_user(UserRole.HR)
    headers = auth_headers(hr)
    goals_view = await permission_id(client, api_url, headers, "goals", "view")

    response = await client.post(
        api_url("/role-permissions"), json={"role": "hr", "permissionId": goals_view}, headers=headers
    )

    assert response.status_code == 403
    assert response.json()["required"] == {"resource": "role_permissions", "action": "create"}


@pytest.mark.asyncio
async def test_unknown_role_is_rejected(client, api_url, make_user, seeded):
    admin = await make_user(UserRole.ADMIN)
    response = await client.get(api_url("/roles/owner/permissions"), headers=auth_headers(admin))
    assert response.status_code == 400


# User overrides

@pytest.mark.asyncio
async def test_user_override_grants_and_revokes(client, api_url, make_user, seeded):
    admin = await make_user(UserRole.ADMIN)
    employee = await make_user(UserRole.EMPLOYEE)
    headers = auth_headers(admin)
    goals_delete = await permission_id(client, api_url, headers, "goals", "delete")
    assert await check_mine(client, api_url, employee, "goals", "delete") is False

    override = await client.post(
        api_url("/user-permissions"),
        json={"userId": employee.id, "permissionId": goals_delete, "granted": True},
        headers=headers,
    )

    assert override.status_code == 201
    assert override.json()["grantedBy"] == admin.id
    assert await check_mine(client, api_url, employee, "goals", "delete") is True

    removed = await client.delete(api_url(f"/user-permissions/{override.json()['id']}"), headers=headers)
    assert removed.status_code == 204
    assert await check_mine(client, api_url, employee, "goals", "delete") is False


@pytest.mark.asyncio
async def test_user_override_replaces_previous(client, api_url, make_user, seeded):
    admin = await make_user(UserRole.ADMIN)
    employee = await make_user(UserRole.EMPLOYEE)
    headers = auth_headers(admin)
    goals_view = await permission_id(client, api_url, headers, "goals", "view")

    for granted in (True, False):
        response = await client.post(
            api_url("/user-permissions"),
            json={"userId": employee.id, "permissionId": goals_view, "granted": granted},
            headers=headers,
        )
        assert response.status_code == 201

    overrides = (await client.get(
        api_url(f"/users/{employee.id}/permissions"), headers=auth_headers(employee)
    )).json()
    assert len(overrides) == 1
    assert overrides[0]["granted"] is False
    assert await check_mine(client, api_url, employee, "goals", "view") is False


@pytest.mark.asyncio
async def test_user_override_for_unknown_user(client, api_url, make_user, seeded):
    admin = await make_user(UserRole.ADMIN)
    headers = auth_headers(admin)
    goals_view = await permission_id(client, api_url, headers, "goals", "view")

    response = await client.post(
        api_url("/user-permissions"), json={"userId": 9999, "permissionId": goals_view}, headers=headers
    )

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_viewing_other_users_overrides(client, api_url, make_user, seeded):
    employee = await make_user(UserRole.EMPLOYEE)
    colleague = await make_user(UserRole.EMPLOYEE)
    hr = await make_user(UserRole.HR)

    by_colleague = await client.get(api_url(f"/users/{employee.id}/permissions"), headers=auth_headers(colleague))
    by_hr = await client.get(api_url(f"/users/{employee.id}/permissions"), headers=auth_headers(hr))

    assert by_colleague.status_code == 403
    assert by_hr.status_code == 200
    assert by_hr.json() == []


# Checks

@pytest.mark.asyncio
async def test_check_my_permission_follows_role_defaults(client, api_url, make_user, seeded):
    employee = await make_user(UserRole.EMPLOYEE)
    manager = await make_user(UserRole.MANAGER)

    assert await check_mine(client, api_url, employee, "goals", "create") is True
    assert await check_mine(client, api_url, employee, "goals", "assign") is False
    assert await check_mine(client, api_url, manager, "goals", "assign") is True
    assert await check_mine(client, api_url, employee, "nonexistent", "view") is False


@pytest.mark.asyncio
async def test_check_unknown_action_is_bad_request(client, api_url, make_user, seeded):
    employee = await make_user()
    response = await client.post(
        api_url("/check-my-permission"),
        json={"resource": "goals", "action": "fly"},
        headers=auth_headers(employee),
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_batch_check_keeps_order(client, api_url, make_user, seeded):
    employee = await make_user(UserRole.EMPLOYEE)

    response = await client.post(
        api_url("/check-my-permissions"),
        json={"checks": [
            {"resource": "goals", "action": "view"},
            {"resource": "settings", "action": "admin"},
            {"resource": "feedback", "action": "create"},
        ]},
        headers=auth_headers(employee),
    )

    assert response.status_code == 200
    assert response.json() == {"results": [True, False, True]}


@pytest.mark.asyncio
async def test_check_permission_for_other_user(client, api_url, make_user, seeded):
    employee = await make_user(UserRole.EMPLOYEE)
    colleague = await make_user(UserRole.EMPLOYEE)
    admin = await make_user(UserRole.ADMIN)
    body = {"userId": employee.id, "resource": "goals", "action": "view"}

    by_self = await client.post(api_url("/check-permission"), json=body, headers=auth_headers(employee))
    by_colleague = await client.post(api_url("/check-permission"), json=body, headers=auth_headers(colleague))
    by_admin = await client.post(api_url("/check-permission"), json=body, headers=auth_headers(admin))
    unknown = await client.post(
        api_url("/check-permission"),
        json={**body, "userId": 9999},
        headers=auth_headers(admin),
    )

    assert by_self.json() == {"hasPermission": True}
    assert by_colleague.status_code == 403
    assert by_admin.json() == {"hasPermission": True}
    assert unknown.status_code == 404


@pytest.mark.asyncio
async def test_my_permissions_lists_role_and_override_grants(client, api_url, make_user, seeded):
    admin = await make_user(UserRole.ADMIN)
    employee = await make_user(UserRole.EMPLOYEE)
    surveys_create = await permission_id(client, api_url, auth_headers(admin), "surveys", "create")
    await client.post(
        api_url("/user-permissions"),
        json={"userId": employee.id, "permissionId": surveys_create},
        headers=auth_headers(admin),
    )

    response = await client.get(api_url("/my-permissions"), headers=auth_headers(employee))

    assert response.status_code == 200
    body = response.json()
    assert body["userId"] == employee.id
    assert body["role"] == "employee"
    entries = {(p["resource"], p["action"]): p for p in body["permissions"]}
    assert entries[("goals", "create")]["source"] == "role"
    assert entries[("surveys", "create")]["source"] == "user"
    assert entries[("surveys", "create")]["resourceDisplayName"] == "Survey Management"
    assert ("analytics", "view") not in entries


# Audit log

@pytest.mark.asyncio
async def test_mutations_are_audited(client, api_url, make_user, seeded):
    admin = await make_user(UserRole.ADMIN)
    employee = await make_user(UserRole.EMPLOYEE)
    headers = auth_headers(admin)
    created = (await client.post(
        api_url("/resources"), json={"name": "wiki", "displayName": "Wiki"}, headers=headers
    )).json()

    logs = await client.get(api_url("/audit-logs"), params={"resource_type": "resource"}, headers=headers)
    denied = await client.get(api_url("/audit-logs"), headers=auth_headers(employee))

    assert logs.status_code == 200
    body = logs.json()
    assert body["total"] >= 1
    entry = body["items"][0]
    assert entry["action"] == "create"
    assert entry["resourceId"] == created["id"]
    assert entry["userId"] == admin.id
    assert denied.status_code == 403


# Races and transactions

@pytest.mark.asyncio
async def test_first_login_race_reuses_provisioned_user(client, api_url, make_user, monkeypatch):
    existing = await make_user(external_id="idp|racer", email="racer@proxa.test")
    lookup = user_dependencies.find_user_by_subject
    lookups = []

    async def stale_then_fresh(db, subject):
        lookups.append(subject)
        if len(lookups) == 1:
            return None
        return await lookup(db, subject)

    monkeypatch.setattr(user_dependencies, "find_user_by_subject", stale_then_fresh)
    token = make_token("idp|racer", email="racer@proxa.test", name="Race Runner")

    response = await client.get(api_url("/users/me"), headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 200
    assert response.json()["id"] == existing.id
    assert lookups == ["idp|racer", "idp|racer"]


@pytest.mark.asyncio
async def test_failed_audit_write_discards_mutation(client, api_url, make_user, seeded, monkeypatch):
    admin = await make_user(UserRole.ADMIN)
    headers = auth_headers(admin)

    async def failing_audit(*args, **kwargs):
        raise RuntimeError("audit store unavailable")

    monkeypatch.setattr(permission_routes, "create_audit_log", failing_audit)
    with pytest.raises(RuntimeError):
        await client.post(api_url("/resources"), json={"name": "wiki", "displayName": "Wiki"}, headers=headers)
    monkeypatch.undo()

    resources = (await client.get(api_url("/resources"), headers=headers)).json()
    assert "wiki" not in {r["name"] for r in resources}
