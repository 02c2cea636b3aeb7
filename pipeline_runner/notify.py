"""Post-run e-mail notification."""

from __future__ import annotations

import html
import mimetypes
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import formatdate, make_msgid
from pathlib import Path
from typing import TYPE_CHECKING, Mapping, Protocol

from .constants import (
    SMTP_HOST_ENV,
    SMTP_PASSWORD_ENV,
    SMTP_PORT_ENV,
    SMTP_STARTTLS_ENV,
    SMTP_USER_ENV,
)
from .framework import append_log, slugify
from .spec import NotifySpec

if TYPE_CHECKING:
    from .runner import RunReport


class NotificationError(RuntimeError):
    """Raised when the run summary cannot be delivered."""


@dataclass(frozen=True)
class OutgoingMail:
    subject: str
    html_body: str
    recipients: tuple[str, ...]
    sender: str
    attachments: tuple[Path, ...] = ()


class MailSender(Protocol):
    def send(self, mail: OutgoingMail) -> None: ...


def build_message(mail: OutgoingMail) -> EmailMessage:
    message = EmailMessage()
    message["Subject"] = mail.subject
    message["From"] = mail.sender
    message["To"] = ", ".join(mail.recipients)
    message["Date"] = formatdate(localtime=False)
    message["Message-ID"] = make_msgid(domain="pipeline-runner")
    message.set_content("This run summary is best viewed as HTML.\n")
    message.add_alternative(mail.html_body, subtype="html")

    for path in mail.attachments:
        mime_type, _ = mimetypes.guess_type(path.name)
        maintype, subtype = (mime_type or "application/octet-stream").split("/", 1)
        message.add_attachment(
            path.read_bytes(), maintype=maintype, subtype=subtype, filename=path.name
        )
    return message


class SmtpMailSender:
    def __init__(
        self,
        host: str,
        port: int | None = 25,
        *,
        username: str = "",
        password: str = "",
        starttls: bool = False,
        timeout: float = 30.0,
    ) -> None:
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.starttls = starttls
        self.timeout = timeout

    @classmethod
    def from_environment(cls, env: Mapping[str, str]) -> "SmtpMailSender":
        """Build a sender from PIPELINE_SMTP_* variables.

        Missing or malformed settings surface as a NotificationError at send
        time so the run itself still proceeds.
        """
        port_raw = env.get(SMTP_PORT_ENV, "25").strip() or "25"
        return cls(
            env.get(SMTP_HOST_ENV, "").strip(),
            int(port_raw) if port_raw.isdigit() else None,
            username=env.get(SMTP_USER_ENV, ""),
            password=env.get(SMTP_PASSWORD_ENV, ""),
            starttls=env.get(SMTP_STARTTLS_ENV, "").lower() in {"1", "true", "yes"},
        )

    def send(self, mail: OutgoingMail) -> None:
        if not self.host:
            raise NotificationError(f"{SMTP_HOST_ENV} is not set; cannot deliver mail over SMTP")
        if self.port is None:
            raise NotificationError(f"invalid {SMTP_PORT_ENV}; expected a port number")
        message = build_message(mail)
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as client:
                if self.starttls:
                    client.starttls()
                if self.username:
                    client.login(self.username, self.password)
                client.send_message(message)
        except (OSError, smtplib.SMTPException) as exc:
            raise NotificationError(f"smtp delivery to {self.host}:{self.port} failed: {exc}") from exc


class OutboxMailSender:
    """Writes each message as an .eml file instead of sending it."""

    def __init__(self, outbox_dir: Path) -> None:
        self.outbox_dir = outbox_dir
        self.delivered: list[Path] = []

    def send(self, mail: OutgoingMail) -> None:
        message = build_message(mail)
        target = self.outbox_dir / f"{len(self.delivered) + 1:02d}-{slugify(mail.subject)}.eml"
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(message.as_bytes())
        except OSError as exc:
            raise NotificationError(f"cannot write outbox message {target}: {exc}") from exc
        self.delivered.append(target)


def render_log_url(template: str, *, run_id: str, build_number: int, fallback: str) -> str:
    if not template:
        return fallback
    try:
        return template.format(run_id=run_id, build_number=build_number)
    except (KeyError, IndexError, ValueError):
        return template


_OUTCOME_COLOURS = {"SUCCESS": "#2e7d32", "FAILED": "#ef6c00", "ABORTED": "#c62828"}


class Notifier:
    """Formats a run summary and hands it to a mail sender."""

    def __init__(self, settings: NotifySpec, sender: MailSender, *, workspace: Path, run_log: Path) -> None:
        self.settings = settings
        self.sender = sender
        self.workspace = workspace
        self.run_log = run_log

    def render_subject(self, report: "RunReport") -> str:
        try:
            return self.settings.subject.format(
                pipeline=report.pipeline_name,
                build_number=report.build_number,
                outcome=report.outcome,
                run_id=report.run_id,
            )
        except (KeyError, IndexError, ValueError) as exc:
            raise NotificationError(f"invalid subject template {self.settings.subject!r}: {exc}") from exc

    def render_body(self, report: "RunReport") -> str:
        esc = html.escape
        colour = _OUTCOME_COLOURS.get(report.outcome, "#424242")
        rows = "\n".join(
            f"<tr><td>{result.index}</td><td>{esc(result.name)}</td>"
            f"<td>{esc(result.status)}</td><td>{result.exit_status}</td>"
            f"<td>{result.duration_ms / 1000.0:.1f}s</td></tr>"
            for result in report.results
        )
        if report.log_url:
            log_ref = f'<a href="{esc(report.log_url, quote=True)}">{esc(report.log_url)}</a>'
        else:
            log_ref = "n/a"
        error = f"<p><b>Error:</b> {esc(report.error)}</p>" if report.error else ""
        return (
            "<html><body>\n"
            f"<h2>{esc(report.pipeline_name)}</h2>\n"
            f"<p>Project: {esc(report.pipeline_name)}</p>\n"
            f"<p>Run: {esc(report.run_id)}</p>\n"
            f"<p>Build Number: {report.build_number}</p>\n"
            f'<p>Outcome: <b style="color:{colour}">{esc(report.outcome)}</b></p>\n'
            f"<p>Log: {log_ref}</p>\n"
            f"{error}"
            "<table border=\"1\" cellpadding=\"4\" cellspacing=\"0\">\n"
            "<tr><th>#</th><th>Stage</th><th>Status</th><th>Exit</th><th>Duration</th></tr>\n"
            f"{rows}\n"
            "</table>\n"
            "</body></html>\n"
        )

    def collect_attachments(self, run_id: str) -> tuple[Path, ...]:
        found: list[Path] = []
        for entry in self.settings.attachments:
            path = Path(entry)
            if not path.is_absolute():
                path = self.workspace / path
            if path.is_file():
                found.append(path)
            else:
                append_log(self.run_log, f"attachment_missing run_id={run_id} path={path}")
        return tuple(found)

    def notify(self, report: "RunReport") -> None:
        if not self.settings.recipients:
            append_log(self.run_log, f"notification_skipped run_id={report.run_id} reason=no_recipients")
            return

        mail = OutgoingMail(
            subject=self.render_subject(report),
            html_body=self.render_body(report),
            recipients=self.settings.recipients,
            sender=self.settings.sender,
            attachments=self.collect_attachments(report.run_id),
        )
        try:
            self.sender.send(mail)
        except NotificationError:
            raise
        except (OSError, smtplib.SMTPException) as exc:
            raise NotificationError(f"delivery failed: {exc}") from exc
        append_log(
            self.run_log,
            f"notification_sent run_id={report.run_id} outcome={report.outcome} "
            f"recipients={','.join(mail.recipients)} attachments={len(mail.attachments)}",
        )
