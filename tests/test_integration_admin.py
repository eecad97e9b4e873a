"""Integration tests for role, permission and account administration."""

import pytest
from fastapi.testclient import TestClient

from gemvault import app as app_module

PASSWORD = "Sapphire2024"


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _create_account(client, runtime, email, *roles):
    account_id = client.post(
        "/v1/auth/register", json={"email": email, "password": PASSWORD}
    ).json()["data"]["user_id"]
    for role in roles:
        runtime.roles.assign_role(account_id, role)
    return account_id


def _headers(client, email):
    token = client.post(
        "/v1/auth/login", json={"email": email, "password": PASSWORD}
    ).json()["data"]["access_token"]
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_headers(client, runtime, sent_emails):
    _create_account(client, runtime, "admin@example.com", "admin")
    return _headers(client, "admin@example.com")


@pytest.fixture
def customer(client, runtime, sent_emails):
    account_id = _create_account(client, runtime, "customer@example.com")
    return account_id, _headers(client, "customer@example.com")


class TestAccessControl:
    def test_customer_cannot_manage_roles(self, client, customer):
        _, headers = customer
        response = client.get("/v1/admin/roles", headers=headers)
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_anonymous_is_unauthorized(self, client):
        assert client.get("/v1/admin/roles").status_code == 401

    def test_role_manage_permission_is_enough(self, client, runtime, sent_emails):
        steward_id = _create_account(client, runtime, "steward@example.com")
        steward = runtime.roles.create_role("steward")
        manage = runtime.store.find_permission("role", "manage")
        runtime.roles.set_permissions(steward.id, [manage.id])
        runtime.roles.assign_role(steward_id, "steward")
        headers = _headers(client, "steward@example.com")

        assert client.get("/v1/admin/roles", headers=headers).status_code == 200
        # status changes are admin-only
        target = _create_account(client, runtime, "target@example.com")
        response = client.post(
            f"/v1/admin/accounts/{target}/status", headers=headers, json={"event": "suspend"}
        )
        assert response.status_code == 403


class TestRoleAdministration:
    def test_role_crud(self, client, admin_headers):
        created = client.post(
            "/v1/admin/roles",
            headers=admin_headers,
            json={"name": "grader", "description": "Grades stones"},
        )
        assert created.status_code == 201
        role_id = created.json()["data"]["id"]

        names = [r["name"] for r in client.get("/v1/admin/roles", headers=admin_headers).json()["data"]["items"]]
        assert "grader" in names

        renamed = client.patch(
            f"/v1/admin/roles/{role_id}", headers=admin_headers, json={"name": "senior-grader"}
        )
        assert renamed.json()["data"]["name"] == "senior-grader"

        perms = client.get("/v1/admin/permissions", headers=admin_headers).json()["data"]["items"]
        appraisal_read = next(p["id"] for p in perms if p["name"] == "appraisal:read")
        updated = client.put(
            f"/v1/admin/roles/{role_id}/permissions",
            headers=admin_headers,
            json={"permission_ids": [appraisal_read]},
        )
        assert [p["name"] for p in updated.json()["data"]["permissions"]] == ["appraisal:read"]

        fetched = client.get(f"/v1/admin/roles/{role_id}", headers=admin_headers).json()["data"]
        assert [p["name"] for p in fetched["permissions"]] == ["appraisal:read"]

        assert client.delete(f"/v1/admin/roles/{role_id}", headers=admin_headers).status_code == 200
        missing = client.get(f"/v1/admin/roles/{role_id}", headers=admin_headers)
        assert missing.status_code == 404

    def test_duplicate_role_conflicts(self, client, admin_headers):
        response = client.post("/v1/admin/roles", headers=admin_headers, json={"name": "dealer"})
        assert response.status_code == 409

    def test_invalid_role_name(self, client, admin_headers):
        response = client.post("/v1/admin/roles", headers=admin_headers, json={"name": "Bad Name"})
        assert response.status_code == 422

    def test_built_in_role_cannot_be_deleted(self, client, runtime, admin_headers):
        admin_role = runtime.store.get_role_by_name("admin")
        response = client.delete(f"/v1/admin/roles/{admin_role.id}", headers=admin_headers)
        assert response.status_code == 400

    def test_create_permission(self, client, admin_headers):
        created = client.post(
            "/v1/admin/permissions",
            headers=admin_headers,
            json={"resource": "certificate", "action": "issue"},
        )
        assert created.status_code == 201
        assert created.json()["data"]["name"] == "certificate:issue"
        again = client.post(
            "/v1/admin/permissions",
            headers=admin_headers,
            json={"resource": "certificate", "action": "issue"},
        )
        assert again.status_code == 409


class TestAccountAdministration:
    def test_assign_and_revoke_role(self, client, admin_headers, customer):
        account_id, _ = customer
        assigned = client.post(
            f"/v1/admin/accounts/{account_id}/roles",
            headers=admin_headers,
            json={"role": "dealer"},
        )
        assert assigned.status_code == 200
        assert assigned.json()["data"]["roles"] == ["customer", "dealer"]

        revoked = client.delete(
            f"/v1/admin/accounts/{account_id}/roles/dealer", headers=admin_headers
        )
        assert revoked.json()["data"]["roles"] == ["customer"]

        again = client.delete(
            f"/v1/admin/accounts/{account_id}/roles/dealer", headers=admin_headers
        )
        assert again.status_code == 404

    def test_assign_unknown_role(self, client, admin_headers, customer):
        account_id, _ = customer
        response = client.post(
            f"/v1/admin/accounts/{account_id}/roles",
            headers=admin_headers,
            json={"role": "wizard"},
        )
        assert response.status_code == 404

    def test_suspend_blocks_login_and_access(self, client, admin_headers, customer):
        account_id, headers = customer
        suspended = client.post(
            f"/v1/admin/accounts/{account_id}/status",
            headers=admin_headers,
            json={"event": "suspend"},
        )
        assert suspended.status_code == 200
        assert suspended.json()["data"]["status"] == "suspended"

        assert client.get("/v1/auth/me", headers=headers).status_code == 401
        login = client.post(
            "/v1/auth/login", json={"email": "customer@example.com", "password": PASSWORD}
        )
        assert login.status_code == 403
        assert login.json()["error"]["code"] == "account_inactive"

        reactivated = client.post(
            f"/v1/admin/accounts/{account_id}/status",
            headers=admin_headers,
            json={"event": "activate"},
        )
        assert reactivated.json()["data"]["status"] == "active"

    def test_unknown_status_event(self, client, admin_headers, customer):
        account_id, _ = customer
        response = client.post(
            f"/v1/admin/accounts/{account_id}/status",
            headers=admin_headers,
            json={"event": "ban"},
        )
        assert response.status_code == 422

    def test_delete_account(self, client, runtime, admin_headers, customer):
        account_id, _ = customer
        response = client.delete(f"/v1/admin/accounts/{account_id}", headers=admin_headers)
        assert response.status_code == 200
        assert runtime.store.get_account(account_id) is None
        assert client.delete(f"/v1/admin/accounts/{account_id}", headers=admin_headers).status_code == 404

    def test_admin_cannot_delete_self(self, client, runtime, admin_headers):
        admin_id = runtime.store.get_account_by_email("admin@example.com").id
        response = client.delete(f"/v1/admin/accounts/{admin_id}", headers=admin_headers)
        assert response.status_code == 403

    @pytest.mark.parametrize("method", ["get", "delete"])
    def test_malformed_account_id_is_not_found(self, client, admin_headers, method):
        response = getattr(client, method)("/v1/admin/accounts/not-a-uuid", headers=admin_headers)
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    def test_malformed_account_id_for_status_and_roles(self, client, admin_headers):
        status = client.post(
            "/v1/admin/accounts/not-a-uuid/status", headers=admin_headers, json={"event": "suspend"}
        )
        assert status.status_code == 404
        roles = client.post(
            "/v1/admin/accounts/not-a-uuid/roles", headers=admin_headers, json={"role": "dealer"}
        )
        assert roles.status_code == 404


class TestAccountListing:
    def test_paginated_listing(self, client, runtime, admin_headers, monkeypatch):
        monkeypatch.setattr(runtime.settings, "default_page_size", 2)
        for i in range(4):
            _create_account(client, runtime, f"collector{i}@example.com")

        response = client.get("/v1/admin/accounts", headers=admin_headers)
        assert response.status_code == 200
        assert response.headers["X-Total-Count"] == "5"
        data = response.json()["data"]
        assert data["page"] == 1 and data["page_size"] == 2
        assert data["total"] == 5 and data["total_pages"] == 3
        assert len(data["items"]) == 2
        assert "password_hash" not in data["items"][0]

        emails = set()
        for page in (1, 2, 3):
            items = client.get(
                f"/v1/admin/accounts?page={page}", headers=admin_headers
            ).json()["data"]["items"]
            emails.update(item["email"] for item in items)
        assert len(emails) == 5
        assert "admin@example.com" in emails

    def test_page_size_capped(self, client, runtime, admin_headers, monkeypatch):
        monkeypatch.setattr(runtime.settings, "max_page_size", 3)
        data = client.get(
            "/v1/admin/accounts?page_size=50", headers=admin_headers
        ).json()["data"]
        assert data["page_size"] == 3

    @pytest.mark.parametrize("query", ["page=0", "page_size=0", "page=abc"])
    def test_invalid_paging(self, client, admin_headers, query):
        response = client.get(f"/v1/admin/accounts?{query}", headers=admin_headers)
        assert response.status_code == 422

    def test_customer_cannot_list(self, client, customer):
        _, headers = customer
        assert client.get("/v1/admin/accounts", headers=headers).status_code == 403

    def test_get_account_by_id(self, client, runtime, admin_headers, customer):
        account_id, _ = customer
        response = client.get(f"/v1/admin/accounts/{account_id}", headers=admin_headers)
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["id"] == account_id
        assert data["email"] == "customer@example.com"
        assert data["roles"] == ["customer"]

        runtime.store.delete_account(account_id)
        gone = client.get(f"/v1/admin/accounts/{account_id}", headers=admin_headers)
        assert gone.status_code == 404


class TestAuditEvents:
    def test_admin_actions_are_audited(self, client, runtime, admin_headers, customer):
        account_id, _ = customer
        admin_id = runtime.store.get_account_by_email("admin@example.com").id
        client.post(
            f"/v1/admin/accounts/{account_id}/status",
            headers={**admin_headers, "User-Agent": "ops-console/2.1"},
            json={"event": "suspend"},
        )
        client.post(
            f"/v1/admin/accounts/{account_id}/roles", headers=admin_headers, json={"role": "dealer"}
        )

        response = client.get(
            f"/v1/admin/audit-events?account_id={admin_id}", headers=admin_headers
        )
        assert response.status_code == 200
        items = response.json()["data"]["items"]
        assign, status = items[0], items[1]
        assert assign["action"] == "role_assign"
        assert assign["entity_id"] == account_id
        assert assign["details"] == {"role": "dealer"}
        assert status["action"] == "status_change"
        assert status["user_agent"] == "ops-console/2.1"
        assert status["ip_address"] == "testclient"
        assert status["request_id"]

    def test_limit_applies(self, client, admin_headers):
        items = client.get("/v1/admin/audit-events?limit=1", headers=admin_headers).json()["data"]["items"]
        assert len(items) == 1
        assert client.get("/v1/admin/audit-events?limit=0", headers=admin_headers).status_code == 422

    def test_customer_cannot_read_audit(self, client, customer):
        _, headers = customer
        assert client.get("/v1/admin/audit-events", headers=headers).status_code == 403
