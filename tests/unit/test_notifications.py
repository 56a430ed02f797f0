"""
Tests for notification delivery, admin alerts and the SendGrid adapter.
"""

import asyncio

import httpx
import pytest

from app.models.domain.errors import DeliveryError
from app.models.domain.secret_domain import (
    EmailType,
    FailureClassification,
    NotificationMessage,
)
from app.services.notifications.admin_alert_service import AdminAlertService, calculate_severity
from app.services.notifications.email_provider import (
    SENDGRID_API_URL,
    ConsoleProvider,
    SendGridProvider,
    get_email_provider,
)
from app.services.notifications.notification_service import NotificationService


def _message(**overrides) -> NotificationMessage:
    fields = {
        "to": "alex@example.com",
        "subject": "Important Message from owner@example.com",
        "html": "<p>share</p>",
        "text": "share",
        "email_type": EmailType.DISCLOSURE,
        "secret_id": "secret-1",
        "metadata": {"secret_title": "Bank vault"},
    }
    fields.update(overrides)
    return NotificationMessage(**fields)


@pytest.mark.asyncio
async def test_successful_send(notifications, provider):
    result = await notifications.send(_message())

    assert result.ok is True
    assert result.provider == "recording"
    assert result.message_id == "msg-1"
    assert len(provider.sent) == 1


@pytest.mark.asyncio
async def test_transient_failure_not_dead_lettered(notifications, provider, failure_repo, alert_provider):
    provider.fail_with("503 service unavailable")

    result = await notifications.send(_message())

    assert result.ok is False
    assert result.classification == FailureClassification.TRANSIENT
    assert result.failure_id is None
    assert failure_repo.records == {}
    assert alert_provider.sent == []


@pytest.mark.asyncio
async def test_permanent_failure_dead_lettered_and_alerted(
    notifications, provider, failure_repo, alert_provider
):
    provider.fail_with("550 mailbox not found")

    result = await notifications.send(_message())

    assert result.permanent
    record = failure_repo.records[result.failure_id]
    assert record.classification == FailureClassification.PERMANENT
    assert record.payload_summary == "type=disclosure subject=Important Message from owner@example.com secret_id=secret-1"

    [alert] = alert_provider.sent
    assert alert.to == "ops@example.com"
    assert alert.subject == "[CRITICAL] Email Delivery Failure - Bank vault"


@pytest.mark.asyncio
async def test_dead_letter_disabled_for_redelivery(notifications, provider, failure_repo):
    provider.fail_with("550 mailbox not found")

    result = await notifications.send(_message(), dead_letter=False)

    assert result.permanent
    assert failure_repo.records == {}


@pytest.mark.asyncio
async def test_provider_timeout_is_transient(dlq, alerts):
    class SlowProvider:
        name = "slow"

        async def send(self, message):
            await asyncio.sleep(5)
            return "never"

    service = NotificationService(provider=SlowProvider(), dlq=dlq, alerts=alerts, timeout_seconds=0.01)

    result = await service.send(_message())

    assert result.ok is False
    assert result.classification == FailureClassification.TRANSIENT
    assert "timeout" in result.error


@pytest.mark.parametrize(
    "email_type,retry_count,expected",
    [
        (EmailType.DISCLOSURE, 0, "critical"),
        (EmailType.REMINDER, 3, "medium"),
        (EmailType.REMINDER, 4, "high"),
        (EmailType.ADMIN_NOTIFICATION, 0, "low"),
    ],
)
def test_alert_severity(email_type, retry_count, expected):
    assert calculate_severity(email_type, retry_count) == expected


@pytest.mark.asyncio
async def test_alert_delivery_failure_is_not_raised(alert_provider):
    alerts = AdminAlertService(provider=alert_provider, admin_email="ops@example.com", timeout_seconds=1)
    alert_provider.fail_with("503 service unavailable")

    sent = await alerts.send_alert(EmailType.REMINDER, "owner@example.com", "timeout", retry_count=4)

    assert sent is False


@pytest.mark.asyncio
async def test_alert_uses_email_type_without_title(alerts, alert_provider):
    await alerts.send_alert(EmailType.REMINDER, "owner@example.com", "timeout")

    [alert] = alert_provider.sent
    assert alert.subject == "[MEDIUM] Email Delivery Failure - reminder"
    assert alert.email_type == EmailType.ADMIN_NOTIFICATION


def _sendgrid(handler) -> SendGridProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return SendGridProvider(api_key="SG.test", from_email="noreply@example.com", client=client)


@pytest.mark.asyncio
async def test_sendgrid_posts_message():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = request.content
        return httpx.Response(202, headers={"X-Message-Id": "sg-123"})

    message_id = await _sendgrid(handler).send(_message())

    assert message_id == "sg-123"
    assert seen["url"] == SENDGRID_API_URL
    assert seen["auth"] == "Bearer SG.test"
    assert b"alex@example.com" in seen["body"]


@pytest.mark.asyncio
async def test_sendgrid_error_status_raises():
    def handler(request):
        return httpx.Response(403, text="forbidden")

    with pytest.raises(DeliveryError) as exc:
        await _sendgrid(handler).send(_message())

    assert "403" in str(exc.value)


@pytest.mark.asyncio
async def test_sendgrid_network_error_raises():
    def handler(request):
        raise httpx.ConnectError("connection reset by peer", request=request)

    with pytest.raises(DeliveryError):
        await _sendgrid(handler).send(_message())


def test_sendgrid_requires_api_key(monkeypatch):
    from app.config import settings

    monkeypatch.setattr(settings, "SENDGRID_API_KEY", None)

    with pytest.raises(ValueError):
        SendGridProvider(api_key=None)


def test_get_email_provider():
    assert isinstance(get_email_provider("console"), ConsoleProvider)

    with pytest.raises(ValueError):
        get_email_provider("carrier-pigeon")
