from __future__ import annotations

from escrow_orders.core.security import issue_access_token


def test_ledger_verify_requires_operator_key_and_ignores_header_spoofing(client, auth_headers):
    no_auth = client.get("/ledger/verify")
    assert no_auth.status_code == 401

    spoof_only = client.get("/ledger/verify", headers={"X-User-Id": "spoof-user"})
    assert spoof_only.status_code == 401

    bad_key = client.get("/ledger/verify", headers={"X-API-Key": "not-a-key"})
    assert bad_key.status_code == 401

    moderator_ok = client.get("/ledger/verify", headers=auth_headers["moderator"])
    assert moderator_ok.status_code == 200


def test_bearer_token_must_be_signed(client):
    token = issue_access_token("buyer-x")
    forged = token[:-4] + ("AAAA" if not token.endswith("AAAA") else "BBBB")

    assert client.get("/orders/purchases", headers={"Authorization": f"Bearer {token}"}).status_code == 200
    assert client.get("/orders/purchases", headers={"Authorization": f"Bearer {forged}"}).status_code == 401
    assert client.get("/orders/purchases", headers={"Authorization": token}).status_code == 401


def test_expired_token_is_rejected(client):
    token = issue_access_token("buyer-x", ttl_seconds=-10)
    response = client.get("/orders/purchases", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401


def test_operators_cannot_list_personal_orders(client, auth_headers):
    response = client.get("/orders/purchases", headers=auth_headers["system"])
    assert response.status_code == 403


def test_healthz_is_public(client):
    assert client.get("/healthz").json() == {"status": "ok"}
