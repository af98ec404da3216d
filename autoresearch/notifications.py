"""Outbound user messages.

A ``NotificationSink`` delivers one text message, optionally with a grid of
choice buttons, to a channel. Sinks never raise: delivery problems are logged
and reported as ``False`` so a flaky channel cannot fail a research job.
"""
import asyncio
import logging
import re
from functools import partial
from typing import List, Optional, Protocol

import httpx
from pydantic import BaseModel, Field
from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail

from autoresearch.config import settings

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

TELEGRAM_API_URL = "https://api.telegram.org"


class NotificationButton(BaseModel):
    text: str
    callback_data: str


class NotificationOptions(BaseModel):
    # Rows of buttons, rendered as an inline keyboard where the channel supports it
    buttons: List[List[NotificationButton]] = Field(default_factory=list)
    markdown: bool = True


class NotificationSink(Protocol):
    async def notify(self, channel_id: str, text: str, options: Optional[NotificationOptions] = None) -> bool: ...


def strip_markdown(text: str) -> str:
    return re.sub(r"[*_`]", "", text)


def format_started_message(task_name: str) -> str:
    return (
        f"🔬 *Research Started*\n\n"
        f"I'm beginning research on: *{task_name}*\n\n"
        f"I'll analyze this task and may ask for clarification if needed."
    )


def format_clarification_message(question: str) -> str:
    return f"🔬 *Research Clarification Needed*\n\n{question}\n\nSelect a focus area or specify your own:"


def format_selection_message(selection: str, task_name: Optional[str] = None) -> str:
    topic = f" on *{task_name}*" if task_name else ""
    return f"✅ *Selected:* {selection}\n\n🔬 Starting deep research{topic}... This may take a few minutes."


def format_custom_prompt_message() -> str:
    return "✏️ Please type your specific focus for this research:"


def format_completion_message(task_name: str, summary: str, source_count: int) -> str:
    return (
        f"✅ *Research Complete!*\n\n"
        f"📚 *Topic:* {task_name}\n\n"
        f"📝 *Summary:*\n{summary}\n\n"
        f"📊 *Sources:* {source_count} sources analyzed\n\n"
        f"The full research note has been attached to your task."
    )


def format_failure_message(task_name: str, error: str) -> str:
    return (
        f"❌ *Research Failed*\n\n"
        f"📚 *Topic:* {task_name}\n\n"
        f"⚠️ *Error:* {error}\n\n"
        f"Please try again or contact support if the issue persists."
    )


def send_email_notification(to_email: str, subject: str, content: str) -> int:
    """
    Send an email notification using SendGrid.

    Parameters:
        to_email (str): The recipient's email address.
        subject (str): The subject for the email.
        content (str): The plain text content of the email.

    Returns:
        int: The status code returned by the SendGrid API.
    """
    message = Mail(
        from_email=settings.FROM_EMAIL,
        to_emails=to_email,
        subject=subject,
        plain_text_content=content,
    )
    try:
        sg = SendGridAPIClient(settings.SENDGRID_API_KEY)
        response = sg.send(message)
        logger.info(f"Email sent to {to_email} with status code {response.status_code}")
        return response.status_code
    except Exception:
        logger.error("Failed to send email", exc_info=True)
        raise


class LogNotificationSink:
    """Used when no delivery channel is configured."""

    async def notify(self, channel_id: str, text: str, options: Optional[NotificationOptions] = None) -> bool:
        logger.info(f"Simulating notification to {channel_id}: {strip_markdown(text)!r}")
        if options and options.buttons:
            labels = [button.text for row in options.buttons for button in row]
            logger.info(f"Simulated choices for {channel_id}: {labels}")
        return True


class EmailNotificationSink:
    """Delivers to channel ids that are email addresses. Buttons become a numbered list."""

    async def notify(self, channel_id: str, text: str, options: Optional[NotificationOptions] = None) -> bool:
        plain = strip_markdown(text)
        subject = plain.strip().splitlines()[0].strip() if plain.strip() else "Research update"
        if options and options.buttons:
            choices = [button.text for row in options.buttons for button in row]
            plain += "\n\n" + "\n".join(f"{i}. {label}" for i, label in enumerate(choices, start=1))

        # SendGrid's client is blocking
        loop = asyncio.get_event_loop()
        try:
            status_code = await loop.run_in_executor(
                None, partial(send_email_notification, channel_id, subject, plain)
            )
        except Exception as e:
            logger.error(f"Email notification to {channel_id} failed: {e}")
            return False
        return 200 <= status_code < 300


class TelegramNotificationSink:
    def __init__(self, bot_token: str, timeout: float = 10.0):
        self.bot_token = bot_token
        self.timeout = timeout

    @property
    def url(self) -> str:
        return f"{TELEGRAM_API_URL}/bot{self.bot_token}/sendMessage"

    async def notify(self, channel_id: str, text: str, options: Optional[NotificationOptions] = None) -> bool:
        options = options or NotificationOptions()
        payload = {"chat_id": channel_id, "text": text}
        if options.markdown:
            payload["parse_mode"] = "Markdown"
        if options.buttons:
            payload["reply_markup"] = {
                "inline_keyboard": [[button.model_dump() for button in row] for row in options.buttons]
            }

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.url, json=payload)
                if response.status_code == 400 and "parse_mode" in payload:
                    # Telegram rejects malformed Markdown entities; resend as plain text
                    logger.info("Markdown parsing failed, retrying without formatting")
                    payload.pop("parse_mode")
                    payload["text"] = strip_markdown(text)
                    response = await client.post(self.url, json=payload)
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Telegram notification to {channel_id} failed: {e}")
            return False
        return True


def build_notification_sink(config) -> NotificationSink:
    if config.TELEGRAM_BOT_TOKEN:
        logger.info("Using Telegram notifications")
        return TelegramNotificationSink(config.TELEGRAM_BOT_TOKEN)
    if config.SENDGRID_API_KEY and config.FROM_EMAIL:
        logger.info("Using email notifications")
        return EmailNotificationSink()
    logger.warning("No notification channel configured, notifications will only be logged")
    return LogNotificationSink()
