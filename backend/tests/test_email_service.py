import smtplib

from clinic_auth.services import email_service as email_module
from clinic_auth.services.email_service import EmailService


class _FakeSMTP:
    sent = []

    def __init__(self, host, port, timeout=None):
        self.host = host
        self.port = port

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self, context=None):
        pass

    def login(self, user, password):
        pass

    def sendmail(self, sender, recipient, message):
        _FakeSMTP.sent.append((sender, recipient, message))


def _configured(**overrides):
    params = dict(
        smtp_host="smtp.clinic.test",
        smtp_port=587,
        smtp_user="mailer",
        smtp_password="secret",
        smtp_use_tls=True,
        from_email="noreply@clinic.test",
        frontend_url="https://clinic.test/",
    )
    params.update(overrides)
    return EmailService(**params)


def test_unconfigured_service_logs_instead_of_sending(monkeypatch):
    def forbidden(*args, **kwargs):
        raise AssertionError("SMTP must not be used")

    monkeypatch.setattr(email_module.smtplib, "SMTP", forbidden)
    service = EmailService(smtp_host="", from_email="")
    assert not service.is_configured
    assert service.send_password_reset_email("alice@clinic.test", "Alice", "tok") is True


def test_reset_email_contains_link(monkeypatch):
    _FakeSMTP.sent = []
    monkeypatch.setattr(email_module.smtplib, "SMTP", _FakeSMTP)
    service = _configured()

    assert service.send_password_reset_email("alice@clinic.test", "Alice", "abc-123") is True
    sender, recipient, message = _FakeSMTP.sent[0]
    assert sender == "noreply@clinic.test"
    assert recipient == "alice@clinic.test"
    assert "https://clinic.test/reset-password?token=abc-123" in message


def test_smtp_failure_returns_false(monkeypatch):
    class Refusing(_FakeSMTP):
        def login(self, user, password):
            raise smtplib.SMTPAuthenticationError(535, b"bad credentials")

    monkeypatch.setattr(email_module.smtplib, "SMTP", Refusing)
    assert _configured().send_password_reset_email("alice@clinic.test", None, "tok") is False


def test_redacts_addresses_for_logging():
    assert EmailService._redact_email("alice@clinic.test") == "al***@clinic.test"
    assert EmailService._redact_email("broken") == "redacted"
