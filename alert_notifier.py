"""
Alerting for runs that block an unusual number of clients.

When a run matches at least `threshold` addresses, a report listing every
address and all of the signatures it matched is mailed to the configured
recipients and, optionally, posted to Slack. Alerting is best-effort: every
delivery failure is logged and the run carries on.
"""

import getpass
import logging
import re
import smtplib
import socket
import time
from dataclasses import dataclass, field
from email.message import EmailMessage
from html import escape
from typing import Any, Callable, Dict, List, Optional, Tuple

import ipinfo

from blocklist_errors import ConfigurationError, NotificationError
from slack_client import SlackBlock, SlackClient

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^@\s<>,;\"]+@[^@\s<>,;\"]+\.[^@\s<>,;\"]+$")

# Slack rejects sections longer than 3000 characters
SLACK_MAX_LISTED = 50


def validate_email(email: str) -> str:
    if not isinstance(email, str) or not EMAIL_PATTERN.match(email.strip()):
        raise ConfigurationError(f"'{email}' doesn't look like a valid email address.")
    return email.strip()


@dataclass
class AlertConfig:
    threshold: int = 0
    recipients: List[str] = field(default_factory=list)
    from_address: Optional[str] = None
    smtp_host: str = "localhost"
    smtp_port: int = 25
    smtp_timeout: float = 30
    slack_token: Optional[str] = None
    slack_channel: Optional[str] = None
    slack_webhook_url: Optional[str] = None
    ipinfo_token: Optional[str] = None

    def __post_init__(self):
        if isinstance(self.threshold, bool) or not isinstance(self.threshold, int) or self.threshold < 0:
            raise ConfigurationError("Alert threshold must be an integer greater than or equal to 0.")
        self.recipients = [validate_email(email) for email in self.recipients]
        if self.from_address is not None:
            self.from_address = validate_email(self.from_address)


def resolve_default_sender() -> Optional[str]:
    """
    Best-effort "user@hostname" for the account running the process.

    Returns None when the account name cannot be determined.
    """
    try:
        user = getpass.getuser()
        hostname = socket.gethostname()
    except (OSError, KeyError, ImportError) as e:
        logger.debug(f"Could not determine the process owner: {e}")
        return None
    if not user or not hostname:
        return None
    return f"{user}@{hostname}"


class AlertNotifier:
    """
    Composes and delivers alert reports.

    Args:
        config: Alert settings.
        sender_resolver: Callable returning a default From address, or None.
        hostname: Host identifier shown in the report. Defaults to this host.
    """

    def __init__(
        self,
        config: AlertConfig,
        sender_resolver: Callable[[], Optional[str]] = resolve_default_sender,
        hostname: Optional[str] = None,
    ):
        self.config = config
        self.sender_resolver = sender_resolver
        self.hostname = hostname or socket.gethostname()

        self.slack_client = None
        if config.slack_token and config.slack_channel:
            logger.debug("Initializing Slack notifications...")
            self.slack_client = SlackClient(token=config.slack_token, channel=config.slack_channel)
        elif config.slack_webhook_url:
            self.slack_client = SlackClient(webhook_url=config.slack_webhook_url)
        elif config.slack_token or config.slack_channel:
            logger.warning(
                "Slack token or channel provided but not both. Slack notifications disabled."
            )

        self.ipinfo_handler = None
        self.ipinfo_cache: Dict[str, Tuple[float, Optional[Dict]]] = {}
        self.ipinfo_cache_ttl = 3600
        if config.ipinfo_token:
            self.ipinfo_handler = ipinfo.getHandler(config.ipinfo_token)

    def _get_ip_info(self, ip: str) -> Optional[Dict]:
        """
        Fetches geolocation and hosting details for an address.
        Returns None if ipinfo is not configured or if lookup fails.
        """
        if not self.ipinfo_handler:
            return None

        now = time.time()
        if ip in self.ipinfo_cache:
            cache_time, cached = self.ipinfo_cache[ip]
            if now - cache_time < self.ipinfo_cache_ttl:
                return cached

        try:
            details = self.ipinfo_handler.getDetails(ip)
            info = {
                "country": getattr(details, "country_name", None),
                "org": getattr(details, "org", None),
                "hostname": getattr(details, "hostname", None),
            }
        except Exception as e:
            logger.warning(f"Failed to fetch IP info for {ip}: {e}")
            info = None
        self.ipinfo_cache[ip] = (now, info)
        return info

    def _format_ip_info(self, ip_info: Optional[Dict]) -> str:
        if not ip_info:
            return ""
        parts = [str(ip_info[key]) for key in ("country", "org", "hostname") if ip_info.get(key)]
        return " | ".join(parts)

    def report_rows(self, run_result: Dict[str, Any]) -> List[Tuple[str, str, str]]:
        """(address, "[sig1], [sig2]", ipinfo summary) for each matched address."""
        rows = []
        for ip, entry in run_result.items():
            signatures = f"[{'], ['.join(entry.all_signatures)}]"
            rows.append((ip, signatures, self._format_ip_info(self._get_ip_info(ip))))
        return rows

    def report_lines(self, run_result: Dict[str, Any]) -> List[str]:
        lines = []
        for ip, signatures, info in self.report_rows(run_result):
            line = f"{ip}\tmatched\t{signatures}"
            if info:
                line += f"\t({info})"
            lines.append(line)
        return lines

    def build_subject(self, threshold: int) -> str:
        return f"Blocklister alert from {self.hostname}: {threshold}+ clients matched."

    def build_message(self, run_result: Dict[str, Any], threshold: int) -> EmailMessage:
        subject = self.build_subject(threshold)
        summary = (
            f"{len(run_result)} client IPs were matched in this run, "
            f"exceeding the threshold of {threshold}."
        )
        lines = self.report_lines(run_result)

        text = "\n".join(
            [f"From Blocklister on {self.hostname}:", "", summary, "", "Matched clients:"]
            + ["\t" + line for line in lines]
        )
        html = "\n".join(
            [
                "<html>",
                "\t<head>",
                f"\t\t<title>{escape(subject)}</title>",
                "\t</head>",
                "\t<body>",
                f"\t\t<p>From Blocklister on {escape(self.hostname)}:</p>",
                f"\t\t<p>{escape(summary)}</p>",
                "\t\t<p>Matched clients:</p>",
                '\t\t<pre style="font-family:courier new,monospace">',
            ]
            + ["\t" + escape(line) for line in lines]
            + ["</pre>", "\t</body>", "</html>"]
        )

        message = EmailMessage()
        message["Subject"] = subject
        message["To"] = ", ".join(self.config.recipients)
        message.set_content(text)
        message.add_alternative(html, subtype="html")
        return message

    def send_email(self, message: EmailMessage) -> None:
        """
        Raises:
            NotificationError: If there is no sender or the SMTP relay fails.
        """
        from_address = self.config.from_address or self.sender_resolver()
        if not from_address:
            raise NotificationError(
                "Could not determine an alert From address. Set 'from_address' in the alerts configuration."
            )
        message["From"] = from_address

        try:
            with smtplib.SMTP(
                self.config.smtp_host, self.config.smtp_port, timeout=self.config.smtp_timeout
            ) as smtp:
                smtp.send_message(message)
        except (smtplib.SMTPException, OSError) as e:
            raise NotificationError(
                f"Failed to send alert email via {self.config.smtp_host}:{self.config.smtp_port}: {e}"
            ) from e
        logger.info(f"Alert email sent to {', '.join(self.config.recipients)}")

    def send_slack(self, run_result: Dict[str, Any], threshold: int) -> bool:
        subject = self.build_subject(threshold)
        rows = self.report_rows(run_result)
        listed = []
        for ip, signatures, info in rows[:SLACK_MAX_LISTED]:
            listed.append(f"• `{ip}` {signatures}" + (f" ({info})" if info else ""))
        if len(rows) > SLACK_MAX_LISTED:
            listed.append(f"• ... and {len(rows) - SLACK_MAX_LISTED} more")

        if self.slack_client.client is None:
            return self.slack_client.post_payload({"text": "\n".join([f"*{subject}*"] + listed)})

        blocks = SlackBlock()
        blocks.add_header(subject)
        blocks.add_fields(
            [("Host", self.hostname), ("Clients matched", len(run_result)), ("Threshold", threshold)]
        )
        blocks.add_divider()
        blocks.append(message="\n".join(listed))
        return self.slack_client.post_blocks(blocks=blocks.block, fallback_text=subject)

    def notify(self, run_result: Dict[str, Any], threshold: int) -> bool:
        """
        Sends the alert report. Never raises for delivery problems.

        Returns:
            bool: True if at least one delivery succeeded.
        """
        delivered = False

        if not self.config.recipients:
            logger.error(
                f"Error: Alert threshold set to {threshold}, but no alert email addresses are defined."
            )
        else:
            try:
                self.send_email(self.build_message(run_result, threshold))
                delivered = True
            except NotificationError as e:
                logger.error(f"Error: {e}")

        if self.slack_client:
            delivered = self.send_slack(run_result, threshold) or delivered

        return delivered
