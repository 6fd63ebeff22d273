"""Shared test fixtures and helpers."""

import json

import pytest
import requests

from grafana_api import GrafanaAPIError


def make_response(status_code=200, body=None, reason="OK", content=None):
    response = requests.Response()
    response.status_code = status_code
    response.reason = reason
    response.encoding = "utf-8"
    if content is None:
        content = b"" if body is None else json.dumps(body).encode()
    response._content = content
    return response


class FakeGrafana:
    """In-memory stand-in for GrafanaClient that records every mutation."""

    def __init__(self, users=None, roster=None):
        self.users = dict(users or {})  # email -> id
        self.roster = list(roster or [])  # {"email", "login", "role"}
        self.calls = []
        self.errors = {}  # (operation, email) -> exception
        self.list_users_error = None
        self.list_org_users_error = None
        self.orgs = {}  # name -> id

    def _maybe_fail(self, operation, email):
        error = self.errors.get((operation, email))
        if error is not None:
            raise error

    def _email_for(self, user_id):
        return next(email for email, uid in self.users.items() if uid == user_id)

    def list_users(self):
        self.calls.append(("list_users",))
        if self.list_users_error:
            raise self.list_users_error
        return [{"email": email, "id": uid} for email, uid in self.users.items()]

    def list_org_users(self, org_id):
        self.calls.append(("list_org_users", org_id))
        if self.list_org_users_error:
            raise self.list_org_users_error
        return [dict(entry) for entry in self.roster]

    def add_org_user(self, org_id, email, role):
        self.calls.append(("add_org_user", org_id, email, str(role)))
        self._maybe_fail("add", email)
        self.roster.append({"email": email, "login": email.split("@")[0], "role": str(role)})

    def update_org_user(self, org_id, user_id, role):
        self.calls.append(("update_org_user", org_id, user_id, str(role)))
        email = self._email_for(user_id)
        self._maybe_fail("update", email)
        for entry in self.roster:
            if entry["email"] == email:
                entry["role"] = str(role)

    def remove_org_user(self, org_id, user_id):
        self.calls.append(("remove_org_user", org_id, user_id))
        email = self._email_for(user_id)
        self._maybe_fail("remove", email)
        self.roster = [entry for entry in self.roster if entry["email"] != email]

    def get_org_by_name(self, name):
        self.calls.append(("get_org_by_name", name))
        return self.orgs[name]

    def mutations(self):
        return [call for call in self.calls if not call[0].startswith(("list_", "get_"))]


@pytest.fixture
def grafana():
    return FakeGrafana(
        users={
            "admin@localhost": 1,
            "alice@example.com": 2,
            "bob@example.com": 3,
            "carol@example.com": 4,
        },
        roster=[
            {"email": "admin@localhost", "login": "admin", "role": "Admin"},
            {"email": "alice@example.com", "login": "alice", "role": "Editor"},
            {"email": "bob@example.com", "login": "bob", "role": "Viewer"},
        ],
    )


@pytest.fixture
def api_error():
    return GrafanaAPIError("500 Internal Server Error: boom", status_code=500)
