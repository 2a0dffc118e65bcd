"""
Operator alerts.

Every alert is logged. Slack and Discord webhooks are used when listed in
monitoring.alert_methods and a URL is configured. Webhook failures are
logged and never raised.
"""
from datetime import datetime, timezone
from typing import List, Optional

import requests

from signal_autoclose.monitoring.logger import get_logger

logger = get_logger(__name__)


class AlertLevel:
    """Alert severity levels."""
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


def _send_slack_webhook(url: str, level: str, title: str, message: str, metadata: Optional[dict] = None) -> None:
    """POST to Slack incoming webhook."""
    payload = {
        "text": f"[{level.upper()}] {title}",
        "blocks": [
            {"type": "section", "text": {"type": "mrkdwn", "text": f"*{title}*\n{message}"}},
        ],
    }
    if metadata:
        lines = "\n".join(f"{k}: {v}" for k, v in metadata.items())
        payload["blocks"].append({"type": "context", "elements": [{"type": "mrkdwn", "text": lines[:2000]}]})
    try:
        resp = requests.post(url, json=payload, timeout=10)
        resp.raise_for_status()
    except requests.RequestException as e:
        logger.warning("Slack webhook failed", error=str(e), error_type=type(e).__name__)


def _send_discord_webhook(url: str, level: str, title: str, message: str, metadata: Optional[dict] = None) -> None:
    """POST to Discord webhook."""
    color = {"info": 0x3498DB, "warning": 0xF39C12, "critical": 0xE74C3C}.get(level, 0x95A5A6)
    embed = {
        "title": title,
        "description": message[:4000],
        "color": color,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    if metadata:
        embed["fields"] = [{"name": k, "value": str(v)[:1024], "inline": False} for k, v in list(metadata.items())[:5]]
    try:
        resp = requests.post(url, json={"embeds": [embed]}, timeout=10)
        resp.raise_for_status()
    except requests.RequestException as e:
        logger.warning("Discord webhook failed", error=str(e), error_type=type(e).__name__)


class AlertSystem:
    """Alert fan-out for batch failures and dead jobs."""

    def __init__(
        self,
        alert_methods: Optional[List[str]] = None,
        slack_webhook_url: Optional[str] = None,
        discord_webhook_url: Optional[str] = None,
        enabled: bool = True,
    ):
        self.enabled = enabled
        self.alert_methods = list(alert_methods or ["log"])
        self.slack_webhook_url = slack_webhook_url
        self.discord_webhook_url = discord_webhook_url

    @classmethod
    def from_config(cls, monitoring) -> "AlertSystem":
        """Build from a MonitoringConfig section."""
        return cls(
            alert_methods=monitoring.alert_methods,
            slack_webhook_url=monitoring.slack_webhook_url,
            discord_webhook_url=monitoring.discord_webhook_url,
        )

    def send_alert(self, level: str, title: str, message: str, metadata: Optional[dict] = None) -> None:
        if not self.enabled:
            return
        log_method = {
            AlertLevel.INFO: logger.info,
            AlertLevel.WARNING: logger.warning,
            AlertLevel.CRITICAL: logger.critical,
        }.get(level, logger.info)
        md = metadata or {}
        log_method("ALERT", title=title, message=message, level=level, metadata=md)
        if "slack" in self.alert_methods and self.slack_webhook_url:
            _send_slack_webhook(self.slack_webhook_url, level, title, message, md)
        if "discord" in self.alert_methods and self.discord_webhook_url:
            _send_discord_webhook(self.discord_webhook_url, level, title, message, md)

    def alert_batch_errors(self, task: str, errors: List[str], processed_count: int) -> None:
        """Alert when a batch task finished with per-signal or per-position failures."""
        if not errors:
            return
        preview = "\n".join(errors[:5])
        more = f"\n... and {len(errors) - 5} more" if len(errors) > 5 else ""
        self.send_alert(
            AlertLevel.WARNING,
            f"Expiration batch errors: {task}",
            f"{len(errors)} error(s) while processing {processed_count} signal(s)\n{preview}{more}",
            metadata={"task": task, "error_count": len(errors), "processed_count": processed_count},
        )

    def alert_task_failed(self, task: str, error: str, context: Optional[dict] = None) -> None:
        self.send_alert(
            AlertLevel.CRITICAL,
            f"Expiration task failed: {task}",
            error,
            metadata={"task": task, **(context or {})},
        )
