import logging
from datetime import datetime, timezone
from typing import Optional
from slack_sdk import WebClient
from slack_sdk.errors import SlackApiError
from kitchen_sync.config import config

logger = logging.getLogger(__name__)

MAX_DETAIL_LENGTH = 2800


class SlackService:
    def __init__(self, token: Optional[str] = None, channel: Optional[str] = None, mentions: Optional[str] = None):
        self.token = token if token is not None else config.SLACK_BOT_TOKEN
        self.status_channel = channel if channel is not None else config.SLACK_CHANNEL_JOB_STATUS
        self.client = WebClient(token=self.token) if self.token and self.status_channel else None

        # Format mentions: <@U123>, <@U456>
        raw_mentions = mentions if mentions is not None else (config.SLACK_MENTIONS or "")
        self.mentions = " ".join([f"<@{m.strip()}>" for m in raw_mentions.split(",") if m.strip()])

        if not self.client:
            logger.info("SLACK_BOT_TOKEN or SLACK_CHANNEL_JOB_STATUS not provided. Slack notifications are disabled.")

    @property
    def enabled(self) -> bool:
        return self.client is not None

    def _get_timestamp_block(self):
        utc_now = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")
        return {
            "type": "context",
            "elements": [
                {
                    "type": "mrkdwn",
                    "text": f"🕒 *Time:* {utc_now}"
                }
            ]
        }

    def build_job_status_blocks(self, title: str, status: str, message: str):
        blocks = [
            {
                "type": "header",
                "text": {
                    "type": "plain_text",
                    "text": title,
                    "emoji": True
                }
            },
            {
                "type": "section",
                "text": {
                    "type": "mrkdwn",
                    "text": f"*Status:* {status}\n*Message:* {message[:MAX_DETAIL_LENGTH]}"
                }
            }
        ]

        if status.lower() == "failed" and self.mentions:
            blocks.append({
                "type": "section",
                "text": {
                    "type": "mrkdwn",
                    "text": f"🚨 Attention: {self.mentions}"
                }
            })

        blocks.append(self._get_timestamp_block())
        return blocks

    def send_job_status(self, title: str, status: str, message: str):
        """
        Sends a sync job run status notification to the status channel.
        """
        if not self.client:
            return None

        blocks = self.build_job_status_blocks(title, status, message)
        try:
            response = self.client.chat_postMessage(
                channel=self.status_channel,
                blocks=blocks,
                text=f"{title}: {status}"
            )
            logger.info(f"Slack job status sent successfully to {self.status_channel}")
            return response
        except SlackApiError as e:
            logger.error(f"Error sending Slack job status to {self.status_channel}: {e.response['error']}")
            return None

slack_service = SlackService()
