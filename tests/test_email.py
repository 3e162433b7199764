"""Tests for the SMTP mail transport."""

import smtplib

import pytest

from tokengate.service.email import EmailService, MailConfig, normalize_email
from tokengate.service.errors import BadRequestError


def _config(**overrides):
    values = {
        "host": "smtp.example.com",
        "port": 587,
        "username": "mailer",
        "password": "smtp-password",
        "use_tls": True,
        "from_email": "noreply@example.com",
        "from_name": "Tokengate",
    }
    values.update(overrides)
    return MailConfig(**values)


class FakeSMTP:
    """Records one SMTP conversation."""

    instances = []

    def __init__(self, host, port, **kwargs):
        self.host = host
        self.port = port
        self.kwargs = kwargs
        self.started_tls = False
        self.logged_in = None
        self.sent = []
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self, context=None):
        self.started_tls = True

    def login(self, username, password):
        self.logged_in = (username, password)

    def sendmail(self, sender, recipient, message):
        self.sent.append((sender, recipient, message))


@pytest.fixture
def fake_smtp(monkeypatch):
    FakeSMTP.instances = []
    monkeypatch.setattr(smtplib, "SMTP", FakeSMTP)
    monkeypatch.setattr(smtplib, "SMTP_SSL", FakeSMTP)
    return FakeSMTP


class TestNormalizeEmail:
    """Tests for address normalization."""

    def test_trims_and_lowercases(self):
        assert normalize_email("  Alice@Example.COM ") == "alice@example.com"

    @pytest.mark.parametrize("value", [None, "", "alice", "alice@", "alice@example"])
    def test_rejects_malformed(self, value):
        with pytest.raises(BadRequestError):
            normalize_email(value)


class TestEmailService:
    """Tests for EmailService.send and the login confirmation mail."""

    def test_dev_mode_logs_instead_of_sending(self, fake_smtp):
        service = EmailService(lambda: _config(host=None))

        assert service.send("a@b.com", "Subject", "<p>hi</p>") is True
        assert fake_smtp.instances == []

    def test_starttls_send(self, fake_smtp):
        service = EmailService(lambda: _config())

        assert service.send("a@b.com", "Subject", "<p>hi</p>", "hi") is True

        server = fake_smtp.instances[0]
        assert server.host == "smtp.example.com"
        assert server.started_tls is True
        assert server.logged_in == ("mailer", "smtp-password")
        sender, recipient, message = server.sent[0]
        assert sender == "noreply@example.com"
        assert recipient == "a@b.com"
        assert "Subject: Subject" in message

    def test_implicit_tls_send(self, fake_smtp):
        service = EmailService(lambda: _config(use_tls=False, port=465))

        assert service.send("a@b.com", "Subject", "<p>hi</p>") is True

        server = fake_smtp.instances[0]
        assert server.port == 465
        assert server.started_tls is False

    def test_invalid_recipient_is_not_sent(self, fake_smtp):
        service = EmailService(lambda: _config())

        assert service.send("not-an-address", "Subject", "<p>hi</p>") is False
        assert fake_smtp.instances == []

    def test_smtp_failure_returns_false(self, monkeypatch):
        def _refuse(*args, **kwargs):
            raise smtplib.SMTPConnectError(421, "unavailable")

        monkeypatch.setattr(smtplib, "SMTP", _refuse)
        service = EmailService(lambda: _config())

        assert service.send("a@b.com", "Subject", "<p>hi</p>") is False

    def test_connection_refused_returns_false(self, monkeypatch):
        def _refuse(*args, **kwargs):
            raise ConnectionRefusedError("refused")

        monkeypatch.setattr(smtplib, "SMTP", _refuse)
        service = EmailService(lambda: _config())

        assert service.send("a@b.com", "Subject", "<p>hi</p>") is False

    def test_config_is_read_per_send(self, fake_smtp):
        configs = iter([_config(host=None), _config(host="smtp.other.example")])
        service = EmailService(lambda: next(configs))

        service.send("a@b.com", "One", "<p>1</p>")
        service.send("a@b.com", "Two", "<p>2</p>")

        assert [s.host for s in fake_smtp.instances] == ["smtp.other.example"]

    def test_login_confirmation_links_to_base_url(self, fake_smtp):
        service = EmailService(lambda: _config(), base_url="https://auth.example.com/")

        assert service.send_login_confirmation(
            "a@b.com",
            "aaa.bbb.ccc",
            device="Mac:Safari",
            ip_address="198.51.100.4",
            ttl_minutes=10,
        )

        message = fake_smtp.instances[0].sent[0][2]
        assert "https://auth.example.com/login/confirm?token=aaa.bbb.ccc" in message
        assert "Mac:Safari" in message
        assert "10 minutes" in message
