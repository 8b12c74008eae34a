from typing import Any

from fastapi.testclient import TestClient

API = "/api/v1"


def _create_round(client: TestClient, headers: dict[str, str], **overrides: Any) -> dict[str, Any]:
    body = {"round_number": 1, "target_block": 800_000, "duration": 10}
    body.update(overrides)
    response = client.post(f"{API}/admin/rounds", json=body, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()


def test_no_active_round(client: TestClient) -> None:
    response = client.get(f"{API}/rounds/active")
    assert response.status_code == 404


def test_round_listing_and_lookup(client: TestClient, admin_headers: dict[str, str]) -> None:
    created = _create_round(client, admin_headers)

    active = client.get(f"{API}/rounds/active").json()
    assert active["id"] == created["id"]
    assert active["metadata"]["prize_config_version"] == 0

    listing = client.get(f"{API}/rounds", params={"status": "open"}).json()
    assert listing["total"] == 1
    assert listing["items"][0]["prize"] == "5000 $SECOND"

    assert client.get(f"{API}/rounds/{created['id']}").json()["status"] == "open"


def test_unknown_round_returns_error_kind(client: TestClient) -> None:
    response = client.get(f"{API}/rounds/does-not-exist")
    assert response.status_code == 404
    assert response.json() == {"error": "not_found", "detail": "Round does-not-exist not found"}


def test_unknown_status_filter_is_rejected(client: TestClient) -> None:
    response = client.get(f"{API}/rounds", params={"status": "paused"})
    assert response.status_code == 400
    assert response.json()["error"] == "validation_error"


def test_submit_guess_uses_token_profile(
    client: TestClient,
    admin_headers: dict[str, str],
    player_headers: dict[str, str],
) -> None:
    round_id = _create_round(client, admin_headers)["id"]

    response = client.post(
        f"{API}/rounds/{round_id}/guesses", json={"value": 2500}, headers=player_headers
    )

    assert response.status_code == 201, response.text
    body = response.json()
    assert body["principal_id"] == "alice"
    assert body["display_name"] == "alice"
    assert body["avatar_url"] == "https://example.com/alice.png"

    mine = client.get(f"{API}/rounds/{round_id}/my-guess", headers=player_headers)
    assert mine.json()["value"] == 2500
    guesses = client.get(f"{API}/rounds/{round_id}/guesses").json()
    assert [g["principal_id"] for g in guesses] == ["alice"]


def test_duplicate_guess_conflicts(
    client: TestClient,
    admin_headers: dict[str, str],
    player_headers: dict[str, str],
) -> None:
    round_id = _create_round(client, admin_headers)["id"]
    url = f"{API}/rounds/{round_id}/guesses"
    assert client.post(url, json={"value": 2500}, headers=player_headers).status_code == 201

    response = client.post(url, json={"value": 2600}, headers=player_headers)

    assert response.status_code == 409
    assert response.json()["error"] == "duplicate"


def test_guess_value_validation(
    client: TestClient,
    admin_headers: dict[str, str],
    player_headers: dict[str, str],
) -> None:
    round_id = _create_round(client, admin_headers)["id"]
    url = f"{API}/rounds/{round_id}/guesses"

    for value in (0, 20_001, 12.5):
        response = client.post(url, json={"value": value}, headers=player_headers)
        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"

    for value in ("2500", True, None):
        response = client.post(url, json={"value": value}, headers=player_headers)
        assert response.status_code == 422


def test_guess_on_closed_round_conflicts(
    client: TestClient,
    admin_headers: dict[str, str],
    player_headers: dict[str, str],
) -> None:
    round_id = _create_round(client, admin_headers)["id"]
    client.post(f"{API}/admin/rounds/{round_id}/close", headers=admin_headers)

    response = client.post(
        f"{API}/rounds/{round_id}/guesses", json={"value": 2500}, headers=player_headers
    )

    assert response.status_code == 409
    assert response.json()["error"] == "invalid_state"


def test_my_guess_missing(
    client: TestClient,
    admin_headers: dict[str, str],
    player_headers: dict[str, str],
) -> None:
    round_id = _create_round(client, admin_headers)["id"]
    response = client.get(f"{API}/rounds/{round_id}/my-guess", headers=player_headers)
    assert response.status_code == 404


def test_guess_requires_valid_token(client: TestClient, admin_headers: dict[str, str]) -> None:
    round_id = _create_round(client, admin_headers)["id"]
    url = f"{API}/rounds/{round_id}/guesses"

    assert client.post(url, json={"value": 2500}).status_code in {401, 403}
    bad = {"Authorization": "Bearer not-a-jwt"}
    assert client.post(url, json={"value": 2500}, headers=bad).status_code == 401


def test_public_prize_config(client: TestClient) -> None:
    body = client.get(f"{API}/prize-config").json()
    assert body["version"] == 0
    assert body["payload"]["kind"] == "prize_config.v1"
    assert body["payload"]["currency_type"] == "$SECOND"
