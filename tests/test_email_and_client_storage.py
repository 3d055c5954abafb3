import json
import os
import smtplib
import stat
from unittest.mock import MagicMock, patch

from portalauth.client.storage import ACCESS_TOKEN_KEY, FileStorage, MemoryStorage
from portalauth.service.email import EmailService


class TestEmailService:
    def test_unconfigured_service_logs_instead_of_sending(self):
        service = EmailService(base_url="https://portal.example.com/")

        with patch("portalauth.service.email.smtplib.SMTP") as smtp:
            assert service.send_password_reset("client@example.com", "tok") is True

        smtp.assert_not_called()
        assert service.is_configured is False
        assert service.base_url == "https://portal.example.com"

    def test_redact_email(self):
        service = EmailService()
        assert service._redact_email("client@example.com") == "cl***@example.com"
        assert service._redact_email("no-at-sign") == "redacted"

    def test_render_escapes_and_includes_link(self):
        service = EmailService(from_name="Smith & Jones LLP")
        html_body, text_body = service._render(
            title="Reset",
            intro="<script>",
            note="n",
            link="https://portal/reset?token=a&b",
            link_label="Go",
        )

        assert "&lt;script&gt;" in html_body
        assert "Smith &amp; Jones LLP" in html_body
        assert "https://portal/reset?token=a&amp;b" in html_body
        assert "https://portal/reset?token=a&b" in text_body

    def test_verification_link_uses_base_url(self):
        service = EmailService(base_url="https://portal.example.com")
        with patch.object(service, "_send_email", return_value=True) as send:
            service.send_email_verification("c@example.com", "carol", "tok123")

        to_email, subject, html_body, text_body = send.call_args[0]
        assert to_email == "c@example.com"
        assert "https://portal.example.com/verify-email?token=tok123" in text_body
        assert "carol" in html_body

    def test_smtp_sends_with_starttls(self):
        service = EmailService(
            smtp_host="smtp.example.com",
            smtp_user="mailer",
            smtp_password="pw",
            from_email="noreply@example.com",
        )
        server = MagicMock()
        with patch("portalauth.service.email.smtplib.SMTP") as smtp:
            smtp.return_value.__enter__.return_value = server
            assert service.send_two_factor_notice("c@example.com", enabled=True) is True

        server.starttls.assert_called_once()
        server.login.assert_called_once_with("mailer", "pw")
        sender, recipient, message = server.sendmail.call_args[0]
        assert (sender, recipient) == ("noreply@example.com", "c@example.com")
        assert "Two-factor authentication enabled" in message

    def test_smtp_failure_returns_false(self):
        service = EmailService(smtp_host="smtp.example.com", from_email="noreply@example.com")
        with patch("portalauth.service.email.smtplib.SMTP") as smtp:
            smtp.return_value.__enter__.return_value.sendmail.side_effect = (
                smtplib.SMTPException("boom")
            )
            assert service.send_password_reset("c@example.com", "tok") is False


class TestClientStorage:
    def test_memory_storage_round_trip(self):
        storage = MemoryStorage({"a": "1"})
        storage.set("b", "2")
        storage.remove("a")
        storage.remove("missing")

        assert storage.get("a") is None
        assert storage.get("b") == "2"

    def test_file_storage_persists_across_instances(self, tmp_path):
        path = tmp_path / "client" / "session.json"
        FileStorage(path).set(ACCESS_TOKEN_KEY, "tok")

        reopened = FileStorage(path)
        assert reopened.get(ACCESS_TOKEN_KEY) == "tok"

        reopened.remove(ACCESS_TOKEN_KEY)
        assert FileStorage(path).get(ACCESS_TOKEN_KEY) is None
        assert json.loads(path.read_text()) == {}

    def test_file_storage_is_owner_only(self, tmp_path):
        path = tmp_path / "session.json"
        FileStorage(path).set(ACCESS_TOKEN_KEY, "tok")

        mode = stat.S_IMODE(os.stat(path).st_mode)
        assert mode == 0o600

    def test_file_storage_ignores_corrupt_file(self, tmp_path):
        path = tmp_path / "session.json"
        path.write_text("{not json")
        storage = FileStorage(path)

        assert storage.get(ACCESS_TOKEN_KEY) is None
        storage.set(ACCESS_TOKEN_KEY, "tok")
        assert storage.get(ACCESS_TOKEN_KEY) == "tok"

    def test_file_storage_ignores_non_string_values(self, tmp_path):
        path = tmp_path / "session.json"
        path.write_text(json.dumps({ACCESS_TOKEN_KEY: 42}))

        assert FileStorage(path).get(ACCESS_TOKEN_KEY) is None
