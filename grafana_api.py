"""
Thin Grafana HTTP API client for organization membership.

Covers the calls the roster sync needs: the global user directory, an
organization's user list, and add / update / remove of org users. Org lookup
by name is included so a DAG can be configured with a name instead of an id.

Authentication is either a bearer token or basic auth. The user and org-user
admin endpoints need a Grafana server admin, so basic auth is the usual choice.
"""

import logging

import requests

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30
USERS_PAGE_SIZE = 1000


class GrafanaAPIError(Exception):
    """A Grafana API call failed, either over HTTP or in transport."""

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.status_code = status_code


class GrafanaNotFoundError(GrafanaAPIError):
    pass


class GrafanaConflictError(GrafanaAPIError):
    """The target already exists (HTTP 409)."""


def _error_for(response):
    try:
        message = response.json().get("message", response.text)
    except ValueError:
        message = response.text
    message = f"{response.status_code} {response.reason}: {message}"
    if response.status_code == 409:
        return GrafanaConflictError(message, status_code=409)
    if response.status_code == 404:
        return GrafanaNotFoundError(message, status_code=404)
    return GrafanaAPIError(message, status_code=response.status_code)


class GrafanaClient:
    def __init__(
        self,
        base_url,
        api_token=None,
        username=None,
        password=None,
        timeout=DEFAULT_TIMEOUT,
        session=None,
    ):
        if not api_token and not (username and password):
            raise ValueError("Either api_token or username/password is required")

        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.session()
        self.session.headers.update({"Content-Type": "application/json"})
        if api_token:
            self.session.headers["Authorization"] = f"Bearer {api_token}"
        else:
            self.session.auth = (username, password)

    def make_api_request(self, method, path, json_data=None, params=None):
        """Send a request and return the decoded body, raising on any error."""
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(
                method=method,
                url=url,
                json=json_data,
                params=params,
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            raise GrafanaAPIError(f"{method} {url} failed: {e}") from e

        if not response.ok:
            raise _error_for(response)
        try:
            return response.json() if response.text else {}
        except ValueError as e:
            raise GrafanaAPIError(
                f"{method} {url} returned a body that is not JSON: {e}",
                status_code=response.status_code,
            ) from e

    # -------------------------------------------------------------------------
    # Identity directory and roster
    # -------------------------------------------------------------------------

    def list_users(self):
        """Return every user known to Grafana as ``{"email", "id", "login"}`` dicts."""
        all_users = []
        page = 1

        while True:
            users = self.make_api_request(
                "GET",
                "/api/users",
                params={"perpage": USERS_PAGE_SIZE, "page": page},
            )
            all_users.extend(users)
            if len(users) < USERS_PAGE_SIZE:
                break
            page += 1

        logger.info(f"Retrieved {len(all_users)} users from Grafana")
        return [
            {"email": user.get("email", ""), "id": user.get("id"), "login": user.get("login", "")}
            for user in all_users
        ]

    def list_org_users(self, org_id):
        """Return the roster of an org as ``{"email", "login", "role"}`` dicts."""
        org_users = self.make_api_request("GET", f"/api/orgs/{org_id}/users")
        logger.info(f"Retrieved {len(org_users)} users from org {org_id}")
        return [
            {
                "email": user.get("email", ""),
                "login": user.get("login", ""),
                "role": user.get("role"),
            }
            for user in org_users
        ]

    # -------------------------------------------------------------------------
    # Membership mutations
    # -------------------------------------------------------------------------

    def add_org_user(self, org_id, email, role):
        return self.make_api_request(
            "POST",
            f"/api/orgs/{org_id}/users",
            json_data={"loginOrEmail": email, "role": str(role)},
        )

    def update_org_user(self, org_id, user_id, role):
        return self.make_api_request(
            "PATCH",
            f"/api/orgs/{org_id}/users/{user_id}",
            json_data={"role": str(role)},
        )

    def remove_org_user(self, org_id, user_id):
        return self.make_api_request("DELETE", f"/api/orgs/{org_id}/users/{user_id}")

    # -------------------------------------------------------------------------
    # Organizations
    # -------------------------------------------------------------------------

    def get_org_by_name(self, name):
        """Return the id of the org called ``name``."""
        org = self.make_api_request("GET", f"/api/orgs/name/{name}")
        return org["id"]
