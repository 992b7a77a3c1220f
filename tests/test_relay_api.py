from __future__ import annotations

import base64

from conftest import AUTH_HEADERS, FakeClock, create_body, make_settings, split_open_url
from fastapi.testclient import TestClient

from pocket_agent.main import create_app

PREFIX = "/v1/human-auth/requests"


def _create(client: TestClient, **overrides) -> dict:
    response = client.post(PREFIX, json=create_body(**overrides), headers=AUTH_HEADERS)
    assert response.status_code == 200, response.text
    return response.json()


def test_machine_routes_require_bearer_key(client: TestClient) -> None:
    assert client.post(PREFIX, json=create_body()).status_code == 401
    assert (
        client.post(
            PREFIX, json=create_body(), headers={"Authorization": "Bearer wrong"}
        ).status_code
        == 401
    )
    assert client.get(PREFIX).status_code == 401


def test_create_returns_open_url_and_poll_token(client: TestClient) -> None:
    created = _create(client)

    request_id, open_token = split_open_url(created["open_url"])
    assert request_id == created["request_id"]
    assert created["open_url"].startswith("http://testserver/human-auth/")
    assert open_token != created["poll_token"]


def test_public_base_url_in_body_wins(client: TestClient) -> None:
    created = _create(client, public_base_url="https://relay.example.com/")

    assert created["open_url"].startswith(
        f"https://relay.example.com/human-auth/{created['request_id']}?token="
    )


def test_full_approve_flow(client: TestClient) -> None:
    created = _create(client)
    request_id, open_token = split_open_url(created["open_url"])
    poll = {"token": created["poll_token"]}

    context = client.get(f"{PREFIX}/{request_id}", params={"token": open_token})
    assert context.status_code == 200
    assert context.json()["capability"] == "sms"
    assert "open_token_hash" not in context.json()

    pending = client.get(f"{PREFIX}/{request_id}/status", params=poll, headers=AUTH_HEADERS)
    assert pending.json()["status"] == "pending"

    resolved = client.post(
        f"{PREFIX}/{request_id}/resolve",
        params={"token": open_token},
        json={"decision": "approve", "note": "ok", "artifact": {"kind": "text", "value": "482913"}},
    )
    assert resolved.status_code == 200
    assert resolved.json()["status"] == "approved"

    status = client.get(f"{PREFIX}/{request_id}/status", params=poll, headers=AUTH_HEADERS)
    body = status.json()
    assert body["status"] == "approved"
    assert body["note"] == "ok"
    assert body["artifact"] == {
        "kind": "text",
        "value": "482913",
        "lat": None,
        "lon": None,
        "path": None,
        "mime_type": None,
        "size_bytes": None,
    }


def test_approval_page_escapes_request_fields(client: TestClient) -> None:
    created = _create(client, instruction="<script>alert(1)</script>", task="a & b")
    request_id, open_token = split_open_url(created["open_url"])

    page = client.get(f"/human-auth/{request_id}", params={"token": open_token})

    assert page.status_code == 200
    assert "text/html" in page.headers["content-type"]
    assert "<script>alert(1)</script>" not in page.text
    assert "&lt;script&gt;alert(1)&lt;/script&gt;" in page.text
    assert "a &amp; b" in page.text


def test_approval_page_rejects_bad_links(client: TestClient) -> None:
    created = _create(client)
    request_id, _ = split_open_url(created["open_url"])

    wrong_token = client.get(f"/human-auth/{request_id}", params={"token": "nope"})
    poll_token = client.get(f"/human-auth/{request_id}", params={"token": created["poll_token"]})
    missing = client.get("/human-auth/auth-unknown", params={"token": "nope"})

    assert wrong_token.status_code == 403
    assert poll_token.status_code == 403
    assert missing.status_code == 404


def test_context_route_errors(client: TestClient) -> None:
    created = _create(client)

    assert client.get(f"{PREFIX}/{created['request_id']}", params={"token": "x"}).status_code == 403
    assert client.get(f"{PREFIX}/auth-unknown", params={"token": "x"}).status_code == 404


def test_resolve_errors(client: TestClient) -> None:
    created = _create(client)
    request_id, open_token = split_open_url(created["open_url"])
    url = f"{PREFIX}/{request_id}/resolve"

    assert client.post(url, params={"token": "wrong"}, json={"decision": "approve"}).status_code == 403
    assert (
        client.post(url, params={"token": open_token}, json={"decision": "maybe"}).status_code
        == 422
    )
    bad_image = client.post(
        url,
        params={"token": open_token},
        json={
            "decision": "approve",
            "artifact": {"kind": "image", "mime_type": "image/png", "base64": "###"},
        },
    )
    assert bad_image.status_code == 422
    assert (
        client.post(
            f"{PREFIX}/auth-unknown/resolve", params={"token": open_token}, json={"decision": "reject"}
        ).status_code
        == 404
    )

    assert client.post(url, params={"token": open_token}, json={"decision": "reject"}).status_code == 200
    again = client.post(url, params={"token": open_token}, json={"decision": "approve"})
    assert again.status_code == 403


def test_poll_requires_poll_token(client: TestClient) -> None:
    created = _create(client)
    request_id, open_token = split_open_url(created["open_url"])

    response = client.get(
        f"{PREFIX}/{request_id}/status", params={"token": open_token}, headers=AUTH_HEADERS
    )

    assert response.status_code == 403


def test_expired_request_reports_timeout(client: TestClient, clock: FakeClock) -> None:
    created = _create(client, timeout_s=5)
    request_id, open_token = split_open_url(created["open_url"])
    clock.advance(5)

    status = client.get(
        f"{PREFIX}/{request_id}/status",
        params={"token": created["poll_token"]},
        headers=AUTH_HEADERS,
    )
    late = client.post(
        f"{PREFIX}/{request_id}/resolve", params={"token": open_token}, json={"decision": "approve"}
    )
    page = client.get(f"/human-auth/{request_id}", params={"token": open_token})

    assert status.json()["status"] == "timeout"
    assert late.status_code == 403
    # The page still opens so the human sees that the request is over.
    assert page.status_code == 200
    assert '"status": "timeout"' in page.text


def test_image_artifact_download(client: TestClient) -> None:
    created = _create(client, capability="camera")
    request_id, open_token = split_open_url(created["open_url"])
    image = b"\xff\xd8\xff\xe0jpeg-bytes"
    artifact_url = f"{PREFIX}/{request_id}/artifact"
    poll = {"token": created["poll_token"]}

    assert client.get(artifact_url, params=poll, headers=AUTH_HEADERS).status_code == 404

    client.post(
        f"{PREFIX}/{request_id}/resolve",
        params={"token": open_token},
        json={
            "decision": "approve",
            "artifact": {
                "kind": "image",
                "mime_type": "image/jpeg",
                "base64": base64.b64encode(image).decode("ascii"),
            },
        },
    )
    response = client.get(artifact_url, params=poll, headers=AUTH_HEADERS)

    assert response.status_code == 200
    assert response.content == image
    assert response.headers["content-type"] == "image/jpeg"
    assert client.get(artifact_url, params=poll).status_code == 401


def test_list_and_operator_override(client: TestClient) -> None:
    first = _create(client)
    second = _create(client, session_id="session-b", capability="camera")

    listed = client.get(PREFIX, headers=AUTH_HEADERS).json()
    assert [row["request_id"] for row in listed] == [first["request_id"], second["request_id"]]

    override_url = f"{PREFIX}/{first['request_id']}/override"
    assert client.post(override_url, json={"decision": "approve"}).status_code == 401
    approved = client.post(
        override_url,
        json={"decision": "approve", "note": "approved from terminal"},
        headers=AUTH_HEADERS,
    )
    assert approved.status_code == 200
    assert approved.json()["status"] == "approved"

    conflict = client.post(override_url, json={"decision": "reject"}, headers=AUTH_HEADERS)
    assert conflict.status_code == 409

    pending = client.get(PREFIX, params={"status": "pending"}, headers=AUTH_HEADERS).json()
    assert [row["request_id"] for row in pending] == [second["request_id"]]
    approved_rows = client.get(PREFIX, params={"status": "approved"}, headers=AUTH_HEADERS).json()
    assert approved_rows[0]["message"] == "approved from terminal"


def test_bearer_gate_is_off_without_a_key(tmp_path) -> None:
    settings = make_settings(tmp_path, relay_api_key="")
    with TestClient(create_app(settings)) as open_client:
        response = open_client.post(PREFIX, json=create_body())

    assert response.status_code == 200


def test_screenshot_path_is_listed_but_not_shown_to_the_human(client: TestClient) -> None:
    created = _create(client, screenshot_path="/home/agent/screenshots/step-004.png")
    request_id, open_token = split_open_url(created["open_url"])

    [row] = client.get(PREFIX, headers=AUTH_HEADERS).json()
    context = client.get(f"{PREFIX}/{request_id}", params={"token": open_token}).json()

    assert row["screenshot_path"] == "/home/agent/screenshots/step-004.png"
    assert "screenshot_path" not in context
