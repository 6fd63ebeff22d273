"""
Reconciliation core for Grafana organization membership.

Desired state comes from three role lists (admins, editors, viewers). Observed
state is the org's current roster minus the exempt admin login, which Grafana
adds to every org by itself. One reconciliation pass:

    Fetch (user index + roster) -> Diff -> Apply (add -> update -> remove)

A fetch failure aborts the pass before anything is changed. During apply
every resolvable operation is attempted; failures are collected rather than
stopping the pass. Users unknown to Grafana are skipped with a warning and
picked up again by a later pass once they exist.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

from grafana_api import GrafanaAPIError, GrafanaConflictError

logger = logging.getLogger(__name__)

DEFAULT_ADMIN_LOGIN = "admin"

ADD = "add"
UPDATE = "update"
REMOVE = "remove"


class Role(str, Enum):
    ADMIN = "Admin"
    EDITOR = "Editor"
    VIEWER = "Viewer"

    def __str__(self):
        return self.value


# Order matters: later lists win in desired_from_lists.
ROLE_LIST_KEYS = {
    "admins": Role.ADMIN,
    "editors": Role.EDITOR,
    "viewers": Role.VIEWER,
}


class OrgUserClient(Protocol):
    def list_users(self) -> list[dict]: ...

    def list_org_users(self, org_id) -> list[dict]: ...

    def add_org_user(self, org_id, email: str, role: Role): ...

    def update_org_user(self, org_id, user_id: int, role: Role): ...

    def remove_org_user(self, org_id, user_id: int): ...


class GrafanaSyncError(Exception):
    pass


class FetchFailure(GrafanaSyncError):
    """The user index or the org roster could not be read. Nothing was changed."""


class DuplicateAssignmentError(GrafanaSyncError, ValueError):
    def __init__(self, duplicates: dict[str, list[str]]):
        self.duplicates = duplicates
        details = "; ".join(
            f"{email} in {', '.join(keys)}" for email, keys in sorted(duplicates.items())
        )
        super().__init__(f"Users assigned to more than one role: {details}")


# =============================================================================
# ROLE ASSIGNMENT SETS
# =============================================================================


def _clean(emails):
    return [e.strip() for e in emails or [] if e and e.strip()]


def desired_from_lists(admins=None, editors=None, viewers=None) -> dict[str, Role]:
    """Build email -> Role from the three role lists.

    An email in more than one list gets the role of the last list, in the
    order admins, editors, viewers. Use validate_role_lists to reject that.
    """
    lists = {"admins": admins, "editors": editors, "viewers": viewers}
    desired = {}
    for key, role in ROLE_LIST_KEYS.items():
        for email in _clean(lists[key]):
            desired[email] = role
    return desired


def find_duplicate_assignments(admins=None, editors=None, viewers=None) -> dict[str, list[str]]:
    lists = {"admins": admins, "editors": editors, "viewers": viewers}
    seen = {}
    for key in ROLE_LIST_KEYS:
        for email in _clean(lists[key]):
            keys = seen.setdefault(email, [])
            if key not in keys:
                keys.append(key)
    return {email: keys for email, keys in seen.items() if len(keys) > 1}


def validate_role_lists(admins=None, editors=None, viewers=None):
    duplicates = find_duplicate_assignments(admins, editors, viewers)
    if duplicates:
        raise DuplicateAssignmentError(duplicates)


def observed_from_roster(roster, exempt_login=DEFAULT_ADMIN_LOGIN) -> dict[str, Role]:
    """Build email -> Role from an org roster, dropping the exempt login.

    An empty ``exempt_login`` disables the exemption. Members without an
    email, or whose role is not Admin/Editor/Viewer (e.g. Grafana's "None"
    basic role), are left out and so are never removed.
    """
    roles = {role.value for role in Role}
    observed = {}
    for entry in roster:
        if exempt_login and entry.get("login") == exempt_login:
            continue
        email = entry.get("email")
        if not email:
            continue
        if entry.get("role") not in roles:
            logger.warning(
                f"[ORG] SKIP: '{email}' has role {entry.get('role')!r}, leaving it unmanaged"
            )
            continue
        observed[email] = Role(entry["role"])
    return observed


def roster_to_role_lists(observed: dict[str, Role]) -> dict[str, list[str]]:
    """Project a state back into admins / editors / viewers lists."""
    return {
        key: sorted(email for email, r in observed.items() if r == role)
        for key, role in ROLE_LIST_KEYS.items()
    }


# =============================================================================
# DIFF
# =============================================================================


@dataclass(frozen=True)
class RosterDiff:
    to_add: dict = field(default_factory=dict)
    to_update: dict = field(default_factory=dict)
    to_remove: list = field(default_factory=list)

    def __len__(self):
        return len(self.to_add) + len(self.to_update) + len(self.to_remove)

    @property
    def is_empty(self):
        return len(self) == 0

    def to_dict(self):
        return {
            "to_add": {email: str(role) for email, role in self.to_add.items()},
            "to_update": {email: str(role) for email, role in self.to_update.items()},
            "to_remove": list(self.to_remove),
        }


def compute_diff(observed: dict[str, Role], desired: dict[str, Role]) -> RosterDiff:
    """Compute the minimal operations that turn ``observed`` into ``desired``.

    A role change is always an update, never remove + add, so the user keeps
    membership throughout.
    """
    to_add = {}
    to_update = {}
    for email, role in desired.items():
        if email not in observed:
            to_add[email] = role
        elif observed[email] != role:
            to_update[email] = role

    to_remove = sorted(email for email in observed if email not in desired)
    return RosterDiff(to_add=to_add, to_update=to_update, to_remove=to_remove)


# =============================================================================
# IDENTITY DIRECTORY
# =============================================================================


def build_user_index(client: OrgUserClient) -> dict[str, int]:
    """Map every Grafana user's email to its numeric id, in a single query."""
    try:
        users = client.list_users()
    except GrafanaAPIError as e:
        raise FetchFailure(f"Failed to list Grafana users: {e}") from e
    return {user["email"]: user["id"] for user in users if user.get("email")}


def exempt_emails(roster, exempt_login=DEFAULT_ADMIN_LOGIN) -> set[str]:
    if not exempt_login:
        return set()
    return {entry["email"] for entry in roster if entry.get("login") == exempt_login}


def fetch_observed(client: OrgUserClient, org_id, exempt_login=DEFAULT_ADMIN_LOGIN):
    """Read the org roster.

    Returns the observed state and the emails held by the exempt login.
    """
    try:
        roster = client.list_org_users(org_id)
        return observed_from_roster(roster, exempt_login), exempt_emails(roster, exempt_login)
    except (GrafanaAPIError, KeyError, ValueError) as e:
        raise FetchFailure(f"Failed to read roster of org {org_id}: {e}") from e


# =============================================================================
# APPLY
# =============================================================================


@dataclass(frozen=True)
class OperationSuccess:
    email: str
    operation: str
    role: Role | None = None


@dataclass(frozen=True)
class OperationFailure:
    email: str
    operation: str
    error: Exception
    conflict: bool = False


@dataclass(frozen=True)
class SkippedOperation:
    email: str
    operation: str
    reason: str = "User is not known to Grafana"


@dataclass
class SyncResult:
    org_id: object
    diff: RosterDiff = field(default_factory=RosterDiff)
    successes: list = field(default_factory=list)
    failures: list = field(default_factory=list)
    skipped: list = field(default_factory=list)
    observed_lists: dict = field(default_factory=dict)

    @property
    def ok(self):
        return not self.failures

    def to_dict(self):
        return {
            "org_id": self.org_id,
            "diff": self.diff.to_dict(),
            "successes": [
                {"email": s.email, "operation": s.operation, "role": str(s.role) if s.role else None}
                for s in self.successes
            ],
            "failures": [
                {
                    "email": f.email,
                    "operation": f.operation,
                    "error": str(f.error),
                    "conflict": f.conflict,
                }
                for f in self.failures
            ],
            "skipped": [
                {"email": s.email, "operation": s.operation, "reason": s.reason}
                for s in self.skipped
            ],
            "observed_lists": self.observed_lists,
        }


def apply_diff(
    client: OrgUserClient,
    org_id,
    diff: RosterDiff,
    index: dict[str, int],
    ignore_conflicts=False,
    result: SyncResult | None = None,
) -> SyncResult:
    """Apply ``diff`` in the order add, update, remove.

    Each call is independent: a failure is recorded and the remaining
    operations still run. Emails missing from ``index`` are skipped.
    """
    if result is None:
        result = SyncResult(org_id=org_id, diff=diff)

    def skip(email, operation):
        logger.warning(
            f"[ORG] SKIP {operation.upper()}: '{email}' is not known to Grafana"
        )
        result.skipped.append(SkippedOperation(email=email, operation=operation))

    def fail(email, operation, error, conflict=False):
        logger.error(f"[ORG] ✗ {operation.upper()} FAILED for {email}: {error}")
        result.failures.append(
            OperationFailure(email=email, operation=operation, error=error, conflict=conflict)
        )

    for email in sorted(diff.to_add):
        role = diff.to_add[email]
        if email not in index:
            skip(email, ADD)
            continue
        try:
            client.add_org_user(org_id, email, role)
        except GrafanaConflictError as e:
            if not ignore_conflicts:
                fail(email, ADD, e, conflict=True)
                continue
            logger.info(f"[ORG] ✓ ADD: {email} is already a member, ignoring conflict")
        except GrafanaAPIError as e:
            fail(email, ADD, e)
            continue
        else:
            logger.info(f"[ORG] ✓ ADD: {email} as {role}")
        result.successes.append(OperationSuccess(email=email, operation=ADD, role=role))

    for email in sorted(diff.to_update):
        role = diff.to_update[email]
        if email not in index:
            skip(email, UPDATE)
            continue
        try:
            client.update_org_user(org_id, index[email], role)
        except GrafanaAPIError as e:
            fail(email, UPDATE, e)
            continue
        logger.info(f"[ORG] ✓ UPDATE: {email} -> {role}")
        result.successes.append(OperationSuccess(email=email, operation=UPDATE, role=role))

    for email in diff.to_remove:
        if email not in index:
            skip(email, REMOVE)
            continue
        try:
            client.remove_org_user(org_id, index[email])
        except GrafanaAPIError as e:
            fail(email, REMOVE, e)
            continue
        logger.info(f"[ORG] ✓ REMOVE: {email}")
        result.successes.append(OperationSuccess(email=email, operation=REMOVE))

    return result


# =============================================================================
# RECONCILIATION PASS
# =============================================================================


def converge(
    client: OrgUserClient,
    org_id,
    observed: dict[str, Role],
    desired: dict[str, Role],
    index: dict[str, int],
    ignore_conflicts=False,
    exempt=(),
) -> SyncResult:
    """Diff already-fetched state and apply it.

    Emails in ``exempt`` belong to the exempt admin login and are dropped
    from ``desired`` as well.
    """
    for email in sorted(set(exempt) & desired.keys()):
        logger.warning(f"[ORG] SKIP: '{email}' is the exempt admin user, ignoring its role")
    desired = {email: role for email, role in desired.items() if email not in exempt}

    diff = compute_diff(observed, desired)
    result = SyncResult(
        org_id=org_id,
        diff=diff,
        observed_lists=roster_to_role_lists(observed),
    )
    if diff.is_empty:
        logger.info(f"[ORG] Org {org_id} is in sync")
        return result

    logger.info(
        f"[ORG] Planned: {len(diff.to_add)} add, {len(diff.to_update)} update, "
        f"{len(diff.to_remove)} remove"
    )
    return apply_diff(client, org_id, diff, index, ignore_conflicts, result)


def reconcile_org_users(
    client: OrgUserClient,
    org_id,
    admins=None,
    editors=None,
    viewers=None,
    exempt_login=DEFAULT_ADMIN_LOGIN,
    ignore_conflicts=False,
    strict=True,
) -> SyncResult:
    """Run one full reconciliation pass for an org.

    Raises DuplicateAssignmentError (when ``strict``) or FetchFailure before
    any change is made. Otherwise returns the aggregate result of the apply
    phase together with the observed roster as role lists.
    """
    if strict:
        validate_role_lists(admins, editors, viewers)
    desired = desired_from_lists(admins, editors, viewers)

    index = build_user_index(client)
    observed, exempt = fetch_observed(client, org_id, exempt_login)
    logger.info(
        f"[ORG] Org {org_id}: {len(observed)} observed members, "
        f"{len(desired)} desired members"
    )
    return converge(client, org_id, observed, desired, index, ignore_conflicts, exempt)


# =============================================================================
# REPORT
# =============================================================================


def format_sync_report(result: dict, run_time=None) -> str:
    """Render a ``SyncResult.to_dict()`` payload as a text report."""
    successes = result.get("successes", [])
    failures = result.get("failures", [])
    skipped = result.get("skipped", [])

    def done(operation):
        return [s for s in successes if s["operation"] == operation]

    report_lines = [
        "=" * 70,
        "GRAFANA ORG USER SYNC REPORT",
        "=" * 70,
        f"Org ID: {result.get('org_id')}",
    ]
    if run_time:
        report_lines.append(f"Run Time: {run_time}")
    report_lines.append("")

    for title, operation, marker in (
        ("USERS ADDED", ADD, "+"),
        ("ROLES UPDATED", UPDATE, "~"),
        ("USERS REMOVED", REMOVE, "-"),
    ):
        items = done(operation)
        if items:
            report_lines.append(f"  {title} ({len(items)}):")
            for item in items:
                role = f" as {item['role']}" if item.get("role") else ""
                report_lines.append(f"    {marker} {item['email']}{role}")
            report_lines.append("")

    if skipped:
        report_lines.append(f"  SKIPPED, NOT KNOWN TO GRAFANA ({len(skipped)}):")
        for item in skipped:
            report_lines.append(f"    ? {item['email']} [{item['operation']}]")
        report_lines.append("")

    if failures:
        report_lines.append(f"  ⚠️  ERRORS ({len(failures)}) — ACTION REQUIRED:")
        for item in failures:
            conflict = " (conflict)" if item.get("conflict") else ""
            report_lines.append(
                f"    ✗ {item['operation'].upper()} {item['email']}{conflict}: {item['error']}"
            )
        report_lines.append("")

    report_lines.extend(
        [
            "-" * 70,
            f"Added: {len(done(ADD))} | Updated: {len(done(UPDATE))} | "
            f"Removed: {len(done(REMOVE))} | Skipped: {len(skipped)} | "
            f"Errors: {len(failures)}",
        ]
    )

    if failures:
        overall = f"⚠️  COMPLETED WITH {len(failures)} ERROR(S)"
    elif not successes and not skipped:
        overall = "IN SYNC"
    else:
        overall = "CHANGES MADE"
    report_lines.extend([f"Overall Status: {overall}", "=" * 70])

    return "\n".join(report_lines)
