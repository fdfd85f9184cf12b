# ses_service.py
# Outbound email for lifecycle notifications, delivered through AWS SES

import asyncio
import logging
from typing import List, Optional, Union

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from config import settings
from notification_templates import Notification

log = logging.getLogger(__name__)


class Mailer:
    """Email collaborator contract. Returns True when the message was accepted for delivery."""

    async def send(self, to: Union[str, List[str]], subject: str, body: str) -> bool:
        raise NotImplementedError

    async def send_notification(self, to: Union[str, List[str]], notification: Notification) -> bool:
        subject, body = notification.render()
        return await self.send(to, subject, body)


def ses_client_config() -> Config:
    """Bounded timeouts and a single attempt for the SES client"""
    return Config(
        connect_timeout=settings.SES_CONNECT_TIMEOUT_SECONDS,
        read_timeout=settings.SES_READ_TIMEOUT_SECONDS,
        retries={'max_attempts': 1},
    )


class SESMailer(Mailer):
    """AWS Simple Email Service implementation"""

    def __init__(self, ses_client=None):
        self.ses_client = ses_client or boto3.client(
            'ses',
            region_name=settings.AWS_REGION,
            aws_access_key_id=settings.AWS_ACCESS_KEY_ID,
            aws_secret_access_key=settings.AWS_SECRET_ACCESS_KEY,
            config=ses_client_config(),
        )
        self.sender_email = settings.SES_SENDER_EMAIL
        self.sender_name = settings.SES_SENDER_NAME

    def _send_sync(self, recipients: List[str], subject: str, body: str) -> dict:
        return self.ses_client.send_email(
            Source=f'{self.sender_name} <{self.sender_email}>',
            Destination={'ToAddresses': recipients},
            Message={
                'Subject': {'Data': subject, 'Charset': 'UTF-8'},
                'Body': {'Text': {'Data': body, 'Charset': 'UTF-8'}},
            },
        )

    async def send(self, to: Union[str, List[str]], subject: str, body: str) -> bool:
        recipients = [to] if isinstance(to, str) else [r for r in to if r]
        if not recipients:
            log.warning(f"Email '{subject}' not sent: no recipients")
            return False
        try:
            # boto3 is blocking; keep it off the event loop
            response = await asyncio.to_thread(self._send_sync, recipients, subject, body)
        except ClientError as e:
            error_code = e.response['Error']['Code']
            error_message = e.response['Error']['Message']
            log.error(f"SES error sending email to {recipients}: {error_code} - {error_message}")
            return False
        except BotoCoreError as e:
            log.error(f"SES transport error sending email to {recipients}: {str(e)}")
            return False

        log.info(f"Email sent successfully to {recipients}. MessageId: {response['MessageId']}")
        return True


_mailer: Optional[Mailer] = None


def get_mailer() -> Mailer:
    global _mailer
    if _mailer is None:
        _mailer = SESMailer()
    return _mailer
