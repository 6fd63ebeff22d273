"""Tests for the Grafana HTTP client."""

from unittest.mock import patch

import pytest
import requests

import grafana_api
from grafana_api import (
    GrafanaAPIError,
    GrafanaClient,
    GrafanaConflictError,
    GrafanaNotFoundError,
)
from grafana_org_roster import Role
from tests.conftest import make_response


@pytest.fixture
def client():
    return GrafanaClient("https://grafana.example.com/", username="admin", password="secret")


class TestAuth:
    def test_basic_auth(self, client):
        assert client.session.auth == ("admin", "secret")
        assert "Authorization" not in client.session.headers
        assert client.base_url == "https://grafana.example.com"

    def test_bearer_token(self):
        client = GrafanaClient("https://grafana.example.com", api_token="glsa_token")
        assert client.session.headers["Authorization"] == "Bearer glsa_token"

    def test_credentials_required(self):
        with pytest.raises(ValueError, match="api_token or username/password"):
            GrafanaClient("https://grafana.example.com", username="admin")


class TestReads:
    def test_list_users_paginates(self, client, monkeypatch):
        monkeypatch.setattr(grafana_api, "USERS_PAGE_SIZE", 2)
        pages = [
            make_response(body=[{"id": 1, "email": "a@x.io", "login": "a"}, {"id": 2, "email": "b@x.io", "login": "b"}]),
            make_response(body=[{"id": 3, "email": "c@x.io", "login": "c"}]),
        ]
        with patch.object(client.session, "request", side_effect=pages) as request:
            users = client.list_users()

        assert [u["id"] for u in users] == [1, 2, 3]
        assert users[0] == {"email": "a@x.io", "id": 1, "login": "a"}
        assert [c.kwargs["params"]["page"] for c in request.call_args_list] == [1, 2]
        assert request.call_args.kwargs["url"] == "https://grafana.example.com/api/users"

    def test_list_org_users(self, client):
        body = [
            {"orgId": 3, "userId": 1, "email": "admin@localhost", "login": "admin", "role": "Admin"},
            {"orgId": 3, "userId": 2, "email": "a@x.io", "login": "a", "role": "Viewer"},
        ]
        with patch.object(client.session, "request", return_value=make_response(body=body)) as request:
            roster = client.list_org_users(3)

        assert roster[1] == {"email": "a@x.io", "login": "a", "role": "Viewer"}
        request.assert_called_once_with(
            method="GET",
            url="https://grafana.example.com/api/orgs/3/users",
            json=None,
            params=None,
            timeout=grafana_api.DEFAULT_TIMEOUT,
        )

    def test_get_org_by_name(self, client):
        with patch.object(
            client.session, "request", return_value=make_response(body={"id": 7, "name": "Ops"})
        ) as request:
            assert client.get_org_by_name("Ops") == 7
        assert request.call_args.kwargs["url"].endswith("/api/orgs/name/Ops")


class TestMutations:
    def test_add_org_user(self, client):
        with patch.object(
            client.session, "request", return_value=make_response(body={"message": "User added to organization"})
        ) as request:
            client.add_org_user(3, "a@x.io", Role.EDITOR)

        assert request.call_args.kwargs["method"] == "POST"
        assert request.call_args.kwargs["url"].endswith("/api/orgs/3/users")
        assert request.call_args.kwargs["json"] == {"loginOrEmail": "a@x.io", "role": "Editor"}

    def test_update_org_user(self, client):
        with patch.object(client.session, "request", return_value=make_response(body={})) as request:
            client.update_org_user(3, 2, Role.ADMIN)

        assert request.call_args.kwargs["method"] == "PATCH"
        assert request.call_args.kwargs["url"].endswith("/api/orgs/3/users/2")
        assert request.call_args.kwargs["json"] == {"role": "Admin"}

    def test_remove_org_user(self, client):
        with patch.object(client.session, "request", return_value=make_response()) as request:
            assert client.remove_org_user(3, 2) == {}

        assert request.call_args.kwargs["method"] == "DELETE"
        assert request.call_args.kwargs["url"].endswith("/api/orgs/3/users/2")


class TestErrors:
    def test_conflict(self, client):
        response = make_response(
            409, {"message": "User is already member of this organization"}, reason="Conflict"
        )
        with patch.object(client.session, "request", return_value=response):
            with pytest.raises(GrafanaConflictError, match="already member") as exc:
                client.add_org_user(3, "a@x.io", Role.VIEWER)
        assert exc.value.status_code == 409

    def test_not_found(self, client):
        response = make_response(404, {"message": "Organization not found"}, reason="Not Found")
        with patch.object(client.session, "request", return_value=response):
            with pytest.raises(GrafanaNotFoundError):
                client.get_org_by_name("missing")

    def test_server_error(self, client):
        response = make_response(500, {"message": "Internal error"}, reason="Internal Server Error")
        with patch.object(client.session, "request", return_value=response):
            with pytest.raises(GrafanaAPIError) as exc:
                client.list_org_users(3)
        assert exc.value.status_code == 500
        assert not isinstance(exc.value, GrafanaConflictError)

    def test_transport_error(self, client):
        with patch.object(
            client.session, "request", side_effect=requests.exceptions.ConnectionError("refused")
        ):
            with pytest.raises(GrafanaAPIError, match="refused") as exc:
                client.list_users()
        assert exc.value.status_code is None

    def test_non_json_success_body(self, client):
        response = make_response(200, content=b"<html>ok</html>")
        with patch.object(client.session, "request", return_value=response):
            with pytest.raises(GrafanaAPIError, match="not JSON") as exc:
                client.add_org_user(3, "a@x.io", Role.VIEWER)
        assert exc.value.status_code == 200

    def test_non_json_user_list_is_a_fetch_failure(self, client):
        from grafana_org_roster import FetchFailure, build_user_index

        response = make_response(200, content=b"<html>login</html>")
        with patch.object(client.session, "request", return_value=response):
            with pytest.raises(FetchFailure):
                build_user_index(client)

    def test_non_json_body_does_not_stop_apply(self, client):
        from grafana_org_roster import ADD, RosterDiff, apply_diff

        responses = [
            make_response(200, content=b"<html>ok</html>"),
            make_response(200, body={"message": "User added to organization"}),
            make_response(200, body={"message": "User removed from organization"}),
        ]
        diff = RosterDiff(
            to_add={"a@x.io": Role.VIEWER, "b@x.io": Role.VIEWER},
            to_remove=["c@x.io"],
        )
        index = {"a@x.io": 1, "b@x.io": 2, "c@x.io": 3}

        with patch.object(client.session, "request", side_effect=responses) as request:
            result = apply_diff(client, 1, diff, index)

        assert request.call_count == 3
        assert [(f.email, f.operation) for f in result.failures] == [("a@x.io", ADD)]
        assert [s.email for s in result.successes] == ["b@x.io", "c@x.io"]
