"""SMS notifications for OTP codes, booking confirmations and cancellations.

Delivery is best-effort: every ``send_*`` method returns a
``DeliveryResult`` and never raises, so a provider outage cannot fail or
roll back the booking/OTP operation that triggered it. Undelivered OTP
codes are written to the operator log so staff can pass them on manually.

One notifier is built per process (``build_notifier``) and handed to the
services that need it.
"""
from dataclasses import dataclass
from datetime import date
from typing import Optional, Protocol

import requests

from clinic_booking import config
from clinic_booking.circuit_breaker import CircuitBreaker, CircuitBreakerOpen
from clinic_booking.errors import TransientProviderError
from clinic_booking.http_client import create_http_session
from clinic_booking.logging_config import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class DeliveryResult:
    """Outcome of one notification attempt."""
    delivered: bool
    error: Optional[str] = None


class Notifier(Protocol):
    """Capability the services depend on."""

    def send_otp(self, phone: str, code: str) -> DeliveryResult: ...

    def send_booking_confirmation(self, phone: str, appointment_date: date, slot_id: str) -> DeliveryResult: ...

    def send_cancellation_notice(self, phone: str) -> DeliveryResult: ...


def format_appointment_date(appointment_date: date) -> str:
    """Wednesday, 25 December 2024"""
    return appointment_date.strftime("%A, %d %B %Y")


class SMSNotifier:
    """
    Message templates plus failure handling shared by all SMS transports.

    Subclasses implement ``_send(phone, message)``, which raises on failure.
    """

    def __init__(
        self,
        clinic_name: str = config.CLINIC_NAME,
        contact_phone: str = config.ADMIN_PHONE,
        otp_validity_minutes: int = config.OTP_VALIDITY_MINUTES
    ):
        self.clinic_name = clinic_name
        self.contact_phone = contact_phone
        self.otp_validity_minutes = otp_validity_minutes

    def send_otp(self, phone: str, code: str) -> DeliveryResult:
        message = (
            f"{code} is your OTP for {self.clinic_name}. "
            f"Valid for {self.otp_validity_minutes} minutes. Do not share this code."
        )
        result = self._deliver(phone, message, kind="otp")
        if not result.delivered:
            # Operator fallback channel: staff read the code from the log
            logger.warning(
                "otp_delivery_fallback",
                phone=phone,
                otp=code,
                valid_minutes=self.otp_validity_minutes,
            )
        return result

    def send_booking_confirmation(self, phone: str, appointment_date: date, slot_id: str) -> DeliveryResult:
        message = (
            f"Your appointment at {self.clinic_name} on "
            f"{format_appointment_date(appointment_date)} at {slot_id} is confirmed. "
            f"Ph: {self.contact_phone}"
        )
        return self._deliver(phone, message, kind="booking_confirmation")

    def send_cancellation_notice(self, phone: str) -> DeliveryResult:
        message = (
            f"Your appointment at {self.clinic_name} has been cancelled. "
            f"For details, contact {self.contact_phone}"
        )
        return self._deliver(phone, message, kind="cancellation")

    def _deliver(self, phone: str, message: str, kind: str) -> DeliveryResult:
        try:
            self._send(phone, message)
        except (TransientProviderError, CircuitBreakerOpen, requests.RequestException) as e:
            logger.warning("sms_delivery_failed", kind=kind, phone=phone, error=str(e))
            return DeliveryResult(delivered=False, error=str(e))
        except Exception as e:
            logger.error("sms_delivery_error", kind=kind, phone=phone, error=str(e), exc_info=True)
            return DeliveryResult(delivered=False, error=f"Unexpected error: {e}")

        logger.info("sms_delivered", kind=kind, phone=phone)
        return DeliveryResult(delivered=True)

    def _send(self, phone: str, message: str):
        raise NotImplementedError


class LoggingNotifier(SMSNotifier):
    """Development notifier: writes messages to the log, delivers nothing."""

    def _send(self, phone: str, message: str):
        logger.info("sms_not_sent", phone=phone, message=message)
        raise TransientProviderError("No SMS provider configured")


class MSG91Notifier(SMSNotifier):
    """Sends SMS through the MSG91 v2 ``sendsms`` API."""

    def __init__(
        self,
        auth_key: str,
        sender_id: str = config.MSG91_SENDER_ID,
        api_url: str = config.MSG91_API_URL,
        session: Optional[requests.Session] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        **kwargs
    ):
        super().__init__(**kwargs)
        self.auth_key = auth_key
        self.sender_id = sender_id
        self.api_url = api_url
        self.session = session or create_http_session()
        self.circuit_breaker = circuit_breaker or CircuitBreaker(name="msg91", failure_threshold=5, timeout=60)

    def _send(self, phone: str, message: str):
        # MSG91 expects the 10-digit national number plus a country code
        national_number = phone[3:] if phone.startswith("+91") else phone
        payload = {
            "sender": self.sender_id,
            "route": "4",
            "country": "91",
            "sms": [{"message": message, "to": [national_number]}],
        }
        headers = {"authkey": self.auth_key, "Content-Type": "application/json"}

        def post_message():
            response = self.session.post(self.api_url, json=payload, headers=headers)
            try:
                body = response.json()
            except ValueError:
                body = {"raw": response.text}

            if not isinstance(body, dict):
                raise TransientProviderError(
                    f"MSG91 returned an unexpected body (HTTP {response.status_code}): {body!r}"
                )
            if response.status_code >= 400 or body.get("type") != "success":
                raise TransientProviderError(
                    f"MSG91 rejected message (HTTP {response.status_code}): {body}"
                )
            return body

        self.circuit_breaker.call(post_message)


def build_notifier() -> SMSNotifier:
    """Pick the notifier for this process from configuration."""
    if config.MSG91_AUTH_KEY:
        logger.info("notifier_configured", provider="msg91")
        return MSG91Notifier(auth_key=config.MSG91_AUTH_KEY)

    logger.warning("notifier_configured", provider="log_only")
    return LoggingNotifier()
