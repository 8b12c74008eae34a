from typing import Any

from fastapi.testclient import TestClient

API = "/api/v1"


def _request_transfer(client: TestClient, headers: dict[str, str], **overrides: Any):
    body = {"winner_reference": "alice", "amount": "1250.5", "idempotency_key": "payout-1"}
    body.update(overrides)
    return client.post(f"{API}/transfers", json=body, headers=headers)


def test_request_transfer_is_idempotent(client: TestClient, admin_headers, dispatcher) -> None:
    first = _request_transfer(client, admin_headers)
    assert first.status_code == 200, first.text
    assert first.json()["already_processed"] is False
    transfer = first.json()["transfer"]
    assert transfer["status"] == "pending"
    assert transfer["amount"] == "1250.5"
    assert transfer["requesting_principal"] == "admin-1"

    replay = _request_transfer(client, admin_headers, amount="99")
    assert replay.json()["already_processed"] is True
    assert replay.json()["transfer"]["id"] == transfer["id"]
    assert replay.json()["transfer"]["amount"] == "1250.5"

    assert [m["transfer_id"] for m in dispatcher.messages] == [transfer["id"]]


def test_request_transfer_derives_key_when_missing(client: TestClient, admin_headers) -> None:
    response = _request_transfer(client, admin_headers, idempotency_key=None)

    key = response.json()["transfer"]["idempotency_key"]
    assert len(key) == 64


def test_request_transfer_validation(client: TestClient, admin_headers) -> None:
    response = _request_transfer(client, admin_headers, amount="0")
    assert response.status_code == 400
    assert response.json()["error"] == "validation_error"


def test_players_cannot_touch_the_ledger(
    client: TestClient, admin_headers, player_headers
) -> None:
    transfer_id = _request_transfer(client, admin_headers).json()["transfer"]["id"]

    assert _request_transfer(client, player_headers, idempotency_key="x").status_code == 403
    assert client.get(f"{API}/transfers", headers=player_headers).status_code == 403
    assert client.get(f"{API}/transfers/{transfer_id}", headers=player_headers).status_code == 403

    response = client.post(
        f"{API}/transfers/{transfer_id}/success",
        json={"external_transaction_reference": "0xabc"},
        headers=player_headers,
    )
    assert response.status_code == 403
    assert response.json()["error"] == "unauthorized"


def test_payment_worker_completes_transfer(
    client: TestClient, admin_headers, worker_headers
) -> None:
    transfer_id = _request_transfer(client, admin_headers).json()["transfer"]["id"]

    pending = client.get(f"{API}/transfers", params={"status": "pending"}, headers=worker_headers)
    assert [t["id"] for t in pending.json()] == [transfer_id]

    by_key = client.get(f"{API}/transfers/by-key/payout-1", headers=worker_headers)
    assert by_key.json()["id"] == transfer_id

    done = client.post(
        f"{API}/transfers/{transfer_id}/success",
        json={"external_transaction_reference": "0xabc"},
        headers=worker_headers,
    )
    assert done.status_code == 200
    assert done.json()["status"] == "success"
    assert done.json()["external_transaction_reference"] == "0xabc"

    late = client.post(
        f"{API}/transfers/{transfer_id}/failure", json={"reason": "timeout"}, headers=worker_headers
    )
    assert late.status_code == 409
    assert late.json()["error"] == "invalid_state"

    assert client.get(f"{API}/transfers", params={"status": "pending"}, headers=worker_headers).json() == []


def test_failed_transfer(client: TestClient, admin_headers) -> None:
    transfer_id = _request_transfer(client, admin_headers).json()["transfer"]["id"]

    failed = client.post(
        f"{API}/transfers/{transfer_id}/failure",
        json={"reason": "wallet rejected"},
        headers=admin_headers,
    )

    assert failed.json()["status"] == "failed"
    assert failed.json()["failure_reason"] == "wallet rejected"


def test_unknown_transfer(client: TestClient, worker_headers) -> None:
    assert client.get(f"{API}/transfers/missing", headers=worker_headers).status_code == 404
    assert client.get(f"{API}/transfers/by-key/missing", headers=worker_headers).status_code == 404
