"""
DAG that keeps a Grafana Organization's members in line with declared role lists.

Every run is one reconciliation pass:
Fetch (user directory + org roster) → Diff → Apply (add → update → remove).

Users are matched by email. Users who are not known to Grafana yet are
skipped with a warning and picked up by a later run once they exist. The
Grafana admin login (GRAFANA_ADMIN_USER, default "admin") is added to every
org by Grafana itself and is never touched; set it to an empty string to
manage that account like any other member.

A failure to read the user directory or the roster fails the run before any
change. Failed add/update/remove calls do not stop the others; they are
listed in the sync report and the run is marked failed.

### Required Environment Variables
- GRAFANA_URL
- GRAFANA_API_TOKEN, or GRAFANA_USERNAME and GRAFANA_PASSWORD
- GRAFANA_ORG_ID or GRAFANA_ORG_NAME

### Optional Environment Variables
- GRAFANA_ADMINS, GRAFANA_EDITORS, GRAFANA_VIEWERS (comma-separated emails)
- GRAFANA_ADMIN_USER (default "admin")
- GRAFANA_IGNORE_CONFLICTS (default "false")
- GRAFANA_STRICT_ROLE_LISTS (default "true")
- GRAFANA_TIMEOUT (seconds, default 30)
"""

import os
import logging
from pendulum import datetime

from airflow.sdk import dag, task

GRAFANA_URL = os.getenv("GRAFANA_URL")
GRAFANA_API_TOKEN = os.getenv("GRAFANA_API_TOKEN")
GRAFANA_USERNAME = os.getenv("GRAFANA_USERNAME")
GRAFANA_PASSWORD = os.getenv("GRAFANA_PASSWORD")
GRAFANA_ORG_ID = os.getenv("GRAFANA_ORG_ID")
GRAFANA_ORG_NAME = os.getenv("GRAFANA_ORG_NAME")
GRAFANA_ADMIN_USER = os.getenv("GRAFANA_ADMIN_USER", "admin")
GRAFANA_ADMINS = os.getenv("GRAFANA_ADMINS", "")
GRAFANA_EDITORS = os.getenv("GRAFANA_EDITORS", "")
GRAFANA_VIEWERS = os.getenv("GRAFANA_VIEWERS", "")
GRAFANA_IGNORE_CONFLICTS = os.getenv("GRAFANA_IGNORE_CONFLICTS", "false")
GRAFANA_STRICT_ROLE_LISTS = os.getenv("GRAFANA_STRICT_ROLE_LISTS", "true")
GRAFANA_TIMEOUT = os.getenv("GRAFANA_TIMEOUT", "30")

task_logger = logging.getLogger("airflow.task")


def split_emails(value):
    """Turn a comma-separated env value into a list of emails."""
    return [email.strip() for email in (value or "").split(",") if email.strip()]


def env_flag(value):
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def build_config():
    """Validate the environment and return the pass configuration."""
    from grafana_org_roster import validate_role_lists

    missing = []

    if not GRAFANA_URL:
        missing.append("GRAFANA_URL")
    if not GRAFANA_API_TOKEN and not (GRAFANA_USERNAME and GRAFANA_PASSWORD):
        missing.append("GRAFANA_API_TOKEN (or GRAFANA_USERNAME/GRAFANA_PASSWORD)")
    if not GRAFANA_ORG_ID and not GRAFANA_ORG_NAME:
        missing.append("GRAFANA_ORG_ID (or GRAFANA_ORG_NAME)")

    if missing:
        raise ValueError(
            f"Missing required environment variables: {', '.join(missing)}"
        )

    config = {
        "org_id": int(GRAFANA_ORG_ID) if GRAFANA_ORG_ID else None,
        "org_name": GRAFANA_ORG_NAME,
        "admin_user": GRAFANA_ADMIN_USER,
        "admins": split_emails(GRAFANA_ADMINS),
        "editors": split_emails(GRAFANA_EDITORS),
        "viewers": split_emails(GRAFANA_VIEWERS),
        "ignore_conflicts": env_flag(GRAFANA_IGNORE_CONFLICTS),
        "strict": env_flag(GRAFANA_STRICT_ROLE_LISTS),
        "timeout": float(GRAFANA_TIMEOUT),
    }

    if config["strict"]:
        validate_role_lists(config["admins"], config["editors"], config["viewers"])

    return config


def get_client(config):
    from grafana_api import GrafanaClient

    return GrafanaClient(
        GRAFANA_URL,
        api_token=GRAFANA_API_TOKEN,
        username=GRAFANA_USERNAME,
        password=GRAFANA_PASSWORD,
        timeout=config["timeout"],
    )


def resolve_config(config):
    """Fill in the org id from GRAFANA_ORG_NAME when no id was given."""
    if config["org_id"] is None:
        config["org_id"] = get_client(config).get_org_by_name(config["org_name"])
        task_logger.info(
            f"Resolved org '{config['org_name']}' to id {config['org_id']}"
        )
    return config


def fetch_user_index(config):
    from grafana_org_roster import build_user_index

    index = build_user_index(get_client(config))
    task_logger.info(f"Indexed {len(index)} Grafana users")
    return index


def fetch_org_roster(config):
    """Fetch the org's members as XCom-friendly email -> role strings."""
    from grafana_org_roster import fetch_observed, roster_to_role_lists

    observed, exempt = fetch_observed(
        get_client(config), config["org_id"], config["admin_user"]
    )
    lists = roster_to_role_lists(observed)
    task_logger.info(
        f"Org {config['org_id']} has {len(lists['admins'])} admins, "
        f"{len(lists['editors'])} editors, {len(lists['viewers'])} viewers"
    )
    return {
        "observed": {email: str(role) for email, role in observed.items()},
        "exempt": sorted(exempt),
    }


def sync_roster(config, user_index, roster):
    """Diff declared against observed roles and apply add, update, remove."""
    from grafana_org_roster import Role, converge, desired_from_lists

    observed = {email: Role(role) for email, role in roster["observed"].items()}
    desired = desired_from_lists(
        config["admins"], config["editors"], config["viewers"]
    )
    result = converge(
        get_client(config),
        config["org_id"],
        observed,
        desired,
        user_index,
        ignore_conflicts=config["ignore_conflicts"],
        exempt=set(roster["exempt"]),
    )
    return result.to_dict()


def report_sync_result(sync_result):
    """Log the sync report and raise if any operation failed."""
    from airflow.exceptions import AirflowException
    from pendulum import now

    from grafana_org_roster import format_sync_report

    report = format_sync_report(
        sync_result, run_time=now("UTC").to_datetime_string()
    )
    task_logger.info(f"\n{report}")

    failures = sync_result.get("failures", [])
    if failures:
        raise AirflowException(
            f"{len(failures)} org user operation(s) failed, see the sync report"
        )
    return report


@dag(
    start_date=datetime(2025, 1, 1),
    schedule="*/15 * * * *",  # Every 15 minutes
    catchup=False,
    max_active_runs=1,
    doc_md=__doc__,
    default_args={"owner": "Grafana", "retries": 2},
    tags=["grafana", "sync", "users", "permissions"],
)
def sync_grafana_org_users():
    @task
    def validate_config() -> dict:
        """Validate environment variables and resolve the org id."""
        config = resolve_config(build_config())
        task_logger.info(
            f"Configuration validated successfully: {len(config['admins'])} admins, "
            f"{len(config['editors'])} editors, {len(config['viewers'])} viewers"
        )
        return config

    # =========================================================================
    # FETCH
    # =========================================================================

    @task
    def get_user_index(config: dict) -> dict:
        """Fetch the Grafana user directory as email -> user id."""
        return fetch_user_index(config)

    @task
    def get_org_roster(config: dict) -> dict:
        """Fetch the org's current members as email -> role."""
        return fetch_org_roster(config)

    # =========================================================================
    # DIFF + APPLY
    # =========================================================================

    @task
    def sync_org_users(config: dict, user_index: dict, roster: dict) -> dict:
        return sync_roster(config, user_index, roster)

    # =========================================================================
    # REPORT
    # =========================================================================

    @task
    def generate_sync_report(sync_result: dict) -> str:
        return report_sync_result(sync_result)

    # =========================================================================
    # DAG FLOW
    # =========================================================================

    # Step 1: Validate configuration (and reject users listed under two roles)
    config = validate_config()

    # Step 2: Fetch the user directory and the current roster.
    # Either failing stops the run before anything is changed.
    user_index = get_user_index(config)
    roster = get_org_roster(config)

    # Step 3: Apply add → update → remove
    sync_result = sync_org_users(config, user_index, roster)

    # Step 4: Report
    generate_sync_report(sync_result)


sync_grafana_org_users()
