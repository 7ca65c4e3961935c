"""Slack Web API integration."""

from dataclasses import dataclass

from finops_tracker.errors import NotificationError


class SlackError(NotificationError):
    """Raised when a Slack operation fails."""


@dataclass
class SlackMessage:
    channel: str
    ts: str
    text: str


STATUS_EMOJI = {
    "pending": ":white_circle:",
    "in_progress": ":large_blue_circle:",
    "completed": ":white_check_mark:",
    "delayed": ":large_yellow_circle:",
    "overdue": ":red_circle:",
}

KIND_EMOJI = {
    "sla_overdue": ":rotating_light:",
    "sla_warning": ":warning:",
    "subtask_incomplete": ":clipboard:",
    "manual": ":mega:",
}


def get_client(token: str | None, timeout: float = 10.0):
    """Get a Slack WebClient. Returns None if no token provided."""
    if not token:
        return None
    from slack_sdk import WebClient
    return WebClient(token=token, timeout=int(timeout))


def send_message(
    token: str | None,
    channel: str,
    text: str,
    blocks: list[dict] | None = None,
    timeout: float = 10.0,
) -> SlackMessage:
    """Send a message to a Slack channel."""
    client = get_client(token, timeout)
    if not client:
        raise SlackError("Slack not configured: SLACK_BOT_TOKEN not set")

    from slack_sdk.errors import SlackApiError

    try:
        response = client.chat_postMessage(
            channel=channel,
            text=text,
            blocks=blocks,
        )
    except SlackApiError as e:
        raise SlackError(f"Slack API error: {e.response.get('error', e)}") from e

    return SlackMessage(
        channel=response["channel"],
        ts=response["ts"],
        text=text,
    )


def format_alert(
    subject: str,
    body: str,
    recipients: list[str],
    kind: str = "status",
    status: str | None = None,
) -> list[dict]:
    """Format a task notification as Slack blocks."""
    emoji = KIND_EMOJI.get(kind) or STATUS_EMOJI.get(status or "", ":bell:")
    blocks = [
        {
            "type": "section",
            "text": {"type": "mrkdwn", "text": f"{emoji} *{subject}*\n{body}"},
        }
    ]
    if recipients:
        blocks.append(
            {
                "type": "context",
                "elements": [
                    {"type": "mrkdwn", "text": f"Attention: {', '.join(recipients)}"},
                ],
            }
        )
    return blocks
