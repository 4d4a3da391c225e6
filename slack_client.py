import logging
import requests
from slack_sdk import WebClient
from slack_sdk.errors import SlackApiError


class SlackBlock(object):
    """Builds a Block Kit message for the alert report."""

    def __init__(self):
        self.block = []

    def add_header(self, text=""):
        self.block.append(
            {"type": "header", "text": {"type": "plain_text", "text": text, "emoji": True}}
        )

    def append(self, message_type="mrkdwn", message=""):
        """
        appends a new section to the message
        """
        self.block.append({"type": "section", "text": {"type": message_type, "text": message}})

    def add_fields(self, fields):
        """
        appends a section of two-column fields, e.g. [("Host", "web1"), ("Blocked", "12")]
        """
        self.block.append(
            {
                "type": "section",
                "fields": [
                    {"type": "mrkdwn", "text": f"*{label}:*\n{value}"} for label, value in fields
                ],
            }
        )

    def add_divider(self):
        self.block.append({"type": "divider"})


class SlackClient(object):
    logger = logging.getLogger(__name__)

    def __init__(self, token="", webhook_url="", channel=""):
        self.token = token if token else None
        self.webhook_url = webhook_url
        self.channel = channel
        self.client = self.get_client() if self.token else None
        self.response = None

    def get_client(self):
        return WebClient(token=self.token)

    def _post(self, channel="", **content):
        if not self.client:
            self.logger.error("Slack client not initialized. Cannot post to slack.")
            return False

        if self.token == "test":
            self.logger.info("Using test token. Wont post anything to slack")
            return True

        target_channel = channel if channel else self.channel
        if not target_channel:
            self.logger.error("No channel specified for slack post")
            return False

        try:
            self.logger.debug("Notifying slack channel [%s] with: %s" % (target_channel, content))
            self.response = self.client.chat_postMessage(channel=target_channel, **content)
            self.logger.info("Posted alert to slack channel [%s]" % target_channel)
            return True
        except SlackApiError as err:
            self.logger.warning("Slack API error when posting: %s", err.response["error"])
            return False
        except Exception as err:
            self.logger.warning("Whoops... could not post to slack: %s", err)
            return False

    def post_blocks(self, blocks=None, channel="", fallback_text=""):
        """
        Posts formatted blocks to a Slack channel. fallback_text is shown in
        notifications and by clients that cannot render blocks.

        Returns:
            bool: True if successful, False otherwise
        """
        content = {"blocks": blocks or []}
        if fallback_text:
            content["text"] = fallback_text
        return self._post(channel=channel, **content)

    def post_payload(self, payload):
        """
        Posts a raw payload to a Slack webhook URL.

        Returns:
            bool: True if successful, False otherwise
        """
        if not self.webhook_url:
            self.logger.error("No webhook URL configured. Cannot post payload.")
            return False

        try:
            self.logger.debug("slack payload: %s" % (payload))
            response = requests.post(self.webhook_url, json=payload, timeout=10)
            response.raise_for_status()
            self.logger.info("Payload posted successfully to webhook")
            return True
        except requests.exceptions.RequestException as err:
            self.logger.warning("Failed to post payload to webhook: %s", err)
            return False
