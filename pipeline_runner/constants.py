"""Canonical constants for pipeline runs."""

from __future__ import annotations

from pathlib import Path

SCHEMA_DIR = Path(__file__).resolve().parent / "schema"
SCHEMA_PATH = SCHEMA_DIR / "pipeline.schema.json"
TOOLS_SCHEMA_PATH = SCHEMA_DIR / "tools.schema.json"


class Outcome:
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    ABORTED = "ABORTED"

    ALL = (SUCCESS, FAILED, ABORTED)


class ExitCode:
    SUCCESS = 0
    FAILED = 1
    SPEC_INVALID = 3
    TOOL_NOT_FOUND = 4
    ABORTED = 5
    RUN_EXISTS = 6
    LOCK_ACTIVE = 7


OUTCOME_EXIT_CODES: dict[str, int] = {
    Outcome.SUCCESS: ExitCode.SUCCESS,
    Outcome.FAILED: ExitCode.FAILED,
    Outcome.ABORTED: ExitCode.ABORTED,
}

# Same status a POSIX shell reports for a command it cannot find.
LAUNCH_FAILURE_STATUS = 127

DEFAULT_SUBJECT = "'{pipeline}' #{build_number}: {outcome}"
DEFAULT_SENDER = "pipeline-runner@localhost"

SMTP_HOST_ENV = "PIPELINE_SMTP_HOST"
SMTP_PORT_ENV = "PIPELINE_SMTP_PORT"
SMTP_USER_ENV = "PIPELINE_SMTP_USER"
SMTP_PASSWORD_ENV = "PIPELINE_SMTP_PASSWORD"
SMTP_STARTTLS_ENV = "PIPELINE_SMTP_STARTTLS"

# Exported to every stage so commands can tag artifacts with the run identity.
RUN_ID_ENV = "PIPELINE_RUN_ID"
BUILD_NUMBER_ENV = "BUILD_NUMBER"
WORKSPACE_ENV = "WORKSPACE"
