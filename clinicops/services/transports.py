"""
Channel transports.

Each transport raises TransportFailure when it cannot deliver and returns
a provider message id otherwise. Client-level timeouts bound every
network call; the dispatcher adds an overall deadline on top.
"""

import logging
from dataclasses import dataclass
from email.mime.application import MIMEApplication
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Callable, Dict, List, Optional

import boto3
import httpx
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError
from sqlalchemy.orm import Session
from twilio.base.exceptions import TwilioException
from twilio.http.http_client import TwilioHttpClient
from twilio.rest import Client as TwilioClient

from clinicops.config import settings
from clinicops.core.error_handling import TransportFailure
from clinicops.core.logging import SecureLogger
from clinicops.models.reminder_models import InAppNotification, ReminderChannel
from clinicops.services.directory import DirectoryEntry
from clinicops.services.reminder_content import Attachment, RenderedReminder

logger = logging.getLogger(__name__)


class EmailTransport:
    def __init__(self, ses_client=None, sender: Optional[str] = None):
        if ses_client is None and settings.AWS_ACCESS_KEY_ID and settings.AWS_SECRET_ACCESS_KEY:
            ses_client = boto3.client(
                'ses',
                region_name=settings.AWS_REGION,
                aws_access_key_id=settings.AWS_ACCESS_KEY_ID,
                aws_secret_access_key=settings.AWS_SECRET_ACCESS_KEY,
                config=BotoConfig(
                    connect_timeout=5,
                    read_timeout=settings.REMINDER_TRANSPORT_TIMEOUT_SECONDS,
                    retries={"max_attempts": 1},
                ),
            )
        self.ses_client = ses_client
        self.sender = sender or settings.AWS_SES_FROM_EMAIL

    def send(self, to: str, subject: str, body: str, html: Optional[str] = None,
             attachments: Optional[List[Attachment]] = None) -> str:
        if not self.ses_client:
            raise TransportFailure(ReminderChannel.EMAIL.value, "AWS SES not configured")

        try:
            if attachments:
                response = self.ses_client.send_raw_email(
                    Source=self.sender,
                    Destinations=[to],
                    RawMessage={'Data': self._mime(to, subject, body, html, attachments).as_string()},
                )
            else:
                message_body = {'Text': {'Data': body}}
                if html:
                    message_body['Html'] = {'Data': html}
                response = self.ses_client.send_email(
                    Source=self.sender,
                    Destination={'ToAddresses': [to]},
                    Message={
                        'Subject': {'Data': subject},
                        'Body': message_body,
                    },
                )
        except (BotoCoreError, ClientError) as e:
            raise TransportFailure(ReminderChannel.EMAIL.value, f"SES send failed: {e}") from e

        SecureLogger.log(logger, logging.INFO, f"Email reminder sent to {to}")
        return response.get('MessageId', '')

    def _mime(self, to, subject, body, html, attachments) -> MIMEMultipart:
        message = MIMEMultipart('mixed')
        message['Subject'] = subject
        message['From'] = self.sender
        message['To'] = to

        alternative = MIMEMultipart('alternative')
        alternative.attach(MIMEText(body, 'plain', 'utf-8'))
        if html:
            alternative.attach(MIMEText(html, 'html', 'utf-8'))
        message.attach(alternative)

        for attachment in attachments:
            part = MIMEApplication(attachment.data)
            part.add_header('Content-Disposition', 'attachment', filename=attachment.filename)
            part.add_header('Content-Type', attachment.content_type)
            message.attach(part)
        return message


class SmsTransport:
    def __init__(self, twilio_client=None, from_number: Optional[str] = None):
        if twilio_client is None and settings.TWILIO_ACCOUNT_SID and settings.TWILIO_AUTH_TOKEN:
            twilio_client = TwilioClient(
                settings.TWILIO_ACCOUNT_SID,
                settings.TWILIO_AUTH_TOKEN,
                http_client=TwilioHttpClient(timeout=settings.REMINDER_TRANSPORT_TIMEOUT_SECONDS),
            )
        self.twilio_client = twilio_client
        self.from_number = from_number or settings.TWILIO_PHONE_NUMBER

    def send(self, phone: str, text: str) -> str:
        if not self.twilio_client or not self.from_number:
            raise TransportFailure(ReminderChannel.SMS.value, "Twilio not configured")

        try:
            message = self.twilio_client.messages.create(
                body=text,
                from_=self.from_number,
                to=phone
            )
        except TwilioException as e:
            raise TransportFailure(ReminderChannel.SMS.value, f"Twilio send failed: {e}") from e

        SecureLogger.log(logger, logging.INFO, f"SMS reminder sent to {phone}")
        return message.sid


class PushTransport:
    def __init__(self, gateway_url: Optional[str] = None, api_key: Optional[str] = None,
                 client: Optional[httpx.Client] = None):
        self.gateway_url = gateway_url or settings.PUSH_GATEWAY_URL
        self.api_key = api_key or settings.PUSH_GATEWAY_KEY
        self.client = client

    def send(self, user_id: str, payload: Dict[str, Any]) -> str:
        if not self.gateway_url:
            raise TransportFailure(ReminderChannel.PUSH.value, "Push gateway not configured")

        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        body = {"user_id": user_id, **payload}

        try:
            if self.client is not None:
                response = self.client.post(self.gateway_url, json=body, headers=headers)
            else:
                with httpx.Client(timeout=settings.REMINDER_TRANSPORT_TIMEOUT_SECONDS) as client:
                    response = client.post(self.gateway_url, json=body, headers=headers)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise TransportFailure(ReminderChannel.PUSH.value, f"Push gateway error: {e}") from e

        try:
            data = response.json()
        except ValueError:
            return ""
        return str(data.get("id", "")) if isinstance(data, dict) else ""


class InAppTransport:
    """Stores the notification for the patient portal, in its own session."""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def create(self, user_id: str, payload: Dict[str, Any]) -> str:
        db = self.session_factory()
        try:
            notification = InAppNotification(
                user_id=user_id,
                title=payload.get("title", "Appointment Reminder"),
                message=payload.get("message", ""),
                payload=payload,
                priority=payload.get("priority", "normal"),
            )
            db.add(notification)
            db.commit()
            return notification.id
        except Exception as e:
            db.rollback()
            raise TransportFailure(ReminderChannel.IN_APP.value, f"In-app notification failed: {e}") from e
        finally:
            db.close()


@dataclass
class ChannelTransports:
    email: EmailTransport
    sms: SmsTransport
    push: PushTransport
    in_app: InAppTransport

    @classmethod
    def from_settings(cls, session_factory: Callable[[], Session]) -> "ChannelTransports":
        return cls(
            email=EmailTransport(),
            sms=SmsTransport(),
            push=PushTransport(),
            in_app=InAppTransport(session_factory),
        )

    def deliver(self, channel: ReminderChannel, recipient: DirectoryEntry, content: RenderedReminder) -> str:
        channel = ReminderChannel(channel)
        if channel == ReminderChannel.EMAIL:
            if not recipient.email:
                raise TransportFailure(channel.value, "Recipient has no email address")
            return self.email.send(recipient.email, content.title, content.text, content.html, content.attachments)

        if channel == ReminderChannel.SMS:
            if not recipient.phone:
                raise TransportFailure(channel.value, "Recipient has no phone number")
            return self.sms.send(recipient.phone, content.text)

        if channel == ReminderChannel.PUSH:
            return self.push.send(recipient.id, {
                "token": recipient.push_token,
                "notification": {"title": content.title, "body": content.text},
                "data": content.data,
            })

        return self.in_app.create(recipient.id, content.data)
