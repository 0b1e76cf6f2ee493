"""Tests for the HTTP endpoints.

Runs the FastAPI app in-process against the in-memory ballot store.
"""

import pytest
from fastapi.testclient import TestClient

from voting_api.database import StorageError
from voting_api.main import create_app
from voting_api.notifier import INVITATION_SUBJECT


@pytest.fixture
def created_vote(client, sample_vote):
    response = client.post("/create_vote", json=sample_vote)
    assert response.status_code == 201
    return sample_vote


class TestCreateVote:
    """Tests for POST /create_vote."""

    def test_create_vote(self, client, sample_vote, store, test_app_services):
        response = client.post("/create_vote", json=sample_vote)

        assert response.status_code == 201
        assert response.json() == {"message": "Vote created and emails sent"}
        session = store.get_session("v1")
        assert session.options == ["red", "blue"]
        assert session.users == ["a@x.com", "b@x.com"]
        assert "v1" in test_app_services.registry

    def test_invitations_sent(self, client, created_vote, test_app_services, transport):
        assert test_app_services.dispatcher.drain(timeout=5)
        assert sorted(transport.recipients(INVITATION_SUBJECT)) == ["a@x.com", "b@x.com"]

    def test_duplicate_vote_id(self, client, created_vote):
        response = client.post("/create_vote", json=created_vote)

        assert response.status_code == 409
        assert "already exists" in response.json()["message"]

    @pytest.mark.parametrize("body", [
        {},
        {"voter_id": "v1", "options": ["red"]},
        {"voter_id": "v1", "options": "red", "user_list": ["a@x.com"]},
        {"voter_id": "  ", "options": ["red"], "user_list": ["a@x.com"]},
        {"voter_id": "v1", "options": [], "user_list": ["a@x.com"]},
        {"voter_id": "v1", "options": ["red"], "user_list": []},
        {"voter_id": "v1; DROP TABLE ballots", "options": ["red"], "user_list": ["a@x.com"]},
    ])
    def test_invalid_body(self, client, body):
        response = client.post("/create_vote", json=body)

        assert response.status_code == 400
        assert "message" in response.json()

    def test_malformed_json(self, client):
        response = client.post(
            "/create_vote",
            content="not valid json",
            headers={"Content-Type": "application/json"}
        )

        assert response.status_code == 400


class TestCastVote:
    """Tests for POST /vote."""

    def test_vote_recorded_then_ignored(self, client, created_vote):
        ballot = {"vote_id": "v1", "email": "a@x.com", "option": "red"}

        first = client.post("/vote", json=ballot)
        assert first.status_code == 200
        assert first.json() == {"message": "Your vote is recorded"}

        second = client.post("/vote", json={**ballot, "option": "blue"})
        assert second.status_code == 200
        assert "already recorded" in second.json()["message"]

    def test_unknown_vote(self, client, created_vote):
        response = client.post("/vote", json={"vote_id": "nope", "email": "a@x.com", "option": "red"})

        assert response.status_code == 404

    def test_unknown_user(self, client, created_vote):
        response = client.post("/vote", json={"vote_id": "v1", "email": "z@x.com", "option": "red"})

        assert response.status_code == 404
        assert "z@x.com" in response.json()["message"]

    def test_unknown_option(self, client, created_vote):
        response = client.post("/vote", json={"vote_id": "v1", "email": "a@x.com", "option": "green"})

        assert response.status_code == 400

    def test_unknown_user_and_option(self, client, created_vote):
        response = client.post("/vote", json={"vote_id": "v1", "email": "z@x.com", "option": "green"})

        assert response.status_code == 404

    def test_missing_fields(self, client, created_vote):
        response = client.post("/vote", json={"vote_id": "v1"})

        assert response.status_code == 400

    def test_closed_vote(self, client, created_vote):
        assert client.post("/close_vote", params={"vote_id": "v1"}).status_code == 200

        response = client.post("/vote", json={"vote_id": "v1", "email": "a@x.com", "option": "red"})
        assert response.status_code == 409


class TestVoteResult:
    """Tests for GET /vote_result."""

    def test_results(self, client, created_vote):
        client.post("/vote", json={"vote_id": "v1", "email": "a@x.com", "option": "red"})

        response = client.get("/vote_result", params={"vote_id": "v1"})

        assert response.status_code == 200
        assert response.json() == {"results": {"red": 1}}

    def test_results_can_be_read_twice(self, client, created_vote):
        client.post("/vote", json={"vote_id": "v1", "email": "b@x.com", "option": "blue"})

        first = client.get("/vote_result", params={"vote_id": "v1"})
        second = client.get("/vote_result", params={"vote_id": "v1"})

        assert first.json() == second.json() == {"results": {"blue": 1}}

    def test_missing_vote_id(self, client):
        response = client.get("/vote_result")

        assert response.status_code == 400
        assert response.json() == {"message": "Missing vote_id parameter"}

    def test_unknown_vote(self, client):
        response = client.get("/vote_result", params={"vote_id": "nope"})

        assert response.status_code == 404

    def test_storage_failure(self, client, created_vote, store, monkeypatch):
        def broken(session_id):
            raise StorageError("connection refused")

        monkeypatch.setattr(store, "aggregate", broken)

        response = client.get("/vote_result", params={"vote_id": "v1"})

        assert response.status_code == 500
        assert response.json() == {"message": "Database error"}


class TestCloseVote:
    """Tests for POST /close_vote."""

    def test_close(self, client, created_vote, test_app_services):
        response = client.post("/close_vote", params={"vote_id": "v1"})

        assert response.status_code == 200
        assert "v1" not in test_app_services.registry

    def test_close_unknown(self, client):
        assert client.post("/close_vote", params={"vote_id": "nope"}).status_code == 404

    def test_close_missing_parameter(self, client):
        assert client.post("/close_vote").status_code == 400


class TestDeleteAllVoters:
    """Tests for DELETE /delete_all_voters."""

    def test_delete_all(self, client, created_vote, test_app_services):
        response = client.delete("/delete_all_voters")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert response.text == "Deleted 1 rows from voters table"
        assert len(test_app_services.registry) == 0
        assert client.get("/vote_result", params={"vote_id": "v1"}).status_code == 404

    def test_delete_when_empty(self, client):
        response = client.delete("/delete_all_voters")

        assert response.text == "Deleted 0 rows from voters table"


@pytest.mark.parametrize("method,path", [
    ("GET", "/create_vote"),
    ("PUT", "/vote"),
    ("POST", "/vote_result"),
    ("GET", "/delete_all_voters"),
    ("POST", "/delete_all_voters"),
])
def test_wrong_method(client, method, path):
    response = client.request(method, path)

    assert response.status_code == 405


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["services"]["database"] == "connected"


def test_metrics(client, created_vote):
    client.post("/vote", json={"vote_id": "v1", "email": "a@x.com", "option": "red"})

    response = client.get("/metrics")

    assert response.status_code == 200
    assert "ballots_cast_total" in response.text
    assert "vote_sessions_created_total" in response.text


def test_end_to_end(client, test_app_services, transport):
    response = client.post("/create_vote", json={
        "voter_id": "v1",
        "options": ["red", "blue"],
        "user_list": ["a@x.com", "b@x.com"]
    })
    assert response.status_code == 201
    assert test_app_services.dispatcher.drain(timeout=5)
    assert sorted(transport.recipients(INVITATION_SUBJECT)) == ["a@x.com", "b@x.com"]

    ballot = {"vote_id": "v1", "email": "a@x.com", "option": "red"}
    assert client.post("/vote", json=ballot).json()["message"] == "Your vote is recorded"
    assert "already recorded" in client.post("/vote", json={**ballot, "option": "blue"}).json()["message"]

    assert client.get("/vote_result", params={"vote_id": "v1"}).json() == {"results": {"red": 1}}


def test_app_can_run_twice(test_settings, store, transport, sample_vote):
    app = create_app(settings=test_settings, store=store, transport=transport, start_reminders=False)
    with TestClient(app):
        pass

    with TestClient(app) as second_client:
        response = second_client.post("/create_vote", json=sample_vote)
        assert response.status_code == 201
        assert app.state.services.dispatcher.drain(timeout=5)

    assert sorted(transport.recipients(INVITATION_SUBJECT)) == ["a@x.com", "b@x.com"]
