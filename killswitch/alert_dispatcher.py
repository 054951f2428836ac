"""
Alert dispatcher for the kill switch.

Operators need to hear about forced kills (shutdown cleanup never ran)
and failed kills (the tracked process may still be trading).
Alerts always go to the log; warning and critical alerts also go to a
Slack webhook when one is configured.
"""

import os
from datetime import datetime
from enum import Enum
from typing import Optional

import httpx
import structlog

logger = structlog.get_logger(__name__)


class AlertSeverity(Enum):
    """Alert severity levels."""
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class AlertDispatcher:
    """
    Dispatches kill switch alerts.

    Non-critical alerts with the same message are deduplicated within
    dedup_window_seconds. Critical alerts always go out.
    """

    def __init__(
        self,
        slack_webhook_url: Optional[str] = None,
        dedup_window_seconds: int = 300,
        timeout_seconds: float = 3.0,
    ):
        """
        Initialize alert dispatcher.

        Args:
            slack_webhook_url: Slack webhook URL (defaults to SLACK_WEBHOOK_URL)
            dedup_window_seconds: Window for suppressing repeated alerts
            timeout_seconds: HTTP timeout for webhook delivery
        """
        self.slack_webhook_url = slack_webhook_url or os.environ.get("SLACK_WEBHOOK_URL")
        self.dedup_window_seconds = dedup_window_seconds
        self.timeout_seconds = timeout_seconds

        self.sent_alerts: dict[str, datetime] = {}

    def send_info(self, message: str, **context) -> None:
        self._dispatch(AlertSeverity.INFO, message, context)

    def send_warning(self, message: str, **context) -> None:
        self._dispatch(AlertSeverity.WARNING, message, context)

    def send_critical(self, message: str, **context) -> None:
        """Send critical alert. Never deduplicated."""
        self._dispatch(AlertSeverity.CRITICAL, message, context)

    def _dispatch(self, severity: AlertSeverity, message: str, context: dict) -> None:
        if not self._should_send(message, severity):
            logger.debug("alert_deduplicated", message=message[:50])
            return

        log_method = {
            AlertSeverity.INFO: logger.info,
            AlertSeverity.WARNING: logger.warning,
            AlertSeverity.CRITICAL: logger.critical,
        }[severity]

        log_method(
            "alert_dispatched",
            severity=severity.value,
            message=message,
            **context,
        )

        if self.slack_webhook_url and severity in (AlertSeverity.WARNING, AlertSeverity.CRITICAL):
            self._send_slack(severity, message, context)

        self.sent_alerts[message] = datetime.now()

    def _should_send(self, message: str, severity: AlertSeverity) -> bool:
        if severity == AlertSeverity.CRITICAL:
            return True

        last_sent = self.sent_alerts.get(message)
        if last_sent is None:
            return True

        elapsed = (datetime.now() - last_sent).total_seconds()
        return elapsed > self.dedup_window_seconds

    def _send_slack(self, severity: AlertSeverity, message: str, context: dict) -> None:
        """Post to the Slack webhook. Delivery failures are logged only."""
        emoji = ":rotating_light:" if severity == AlertSeverity.CRITICAL else ":warning:"

        payload = {
            "text": f"{emoji} *Kill Switch {severity.value.upper()}*: {message}",
            "blocks": [
                {
                    "type": "section",
                    "text": {
                        "type": "mrkdwn",
                        "text": f"{emoji} *{severity.value.upper()}*: {message}",
                    },
                },
            ],
        }

        if context:
            context_text = "\n".join(f"- *{k}*: {v}" for k, v in context.items())
            payload["blocks"].append({
                "type": "section",
                "text": {"type": "mrkdwn", "text": context_text},
            })

        try:
            response = httpx.post(
                self.slack_webhook_url,
                json=payload,
                timeout=self.timeout_seconds,
            )
            response.raise_for_status()
            logger.debug("slack_alert_sent")
        except httpx.HTTPError as e:
            logger.error("slack_alert_failed", error=str(e))
