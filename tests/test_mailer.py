import smtplib
import unittest
from unittest.mock import patch

from shared.errors import MailerError
from shared.services.config_store import SmtpConfig
from shared.services.mailer import Mailer


def _config(**overrides) -> SmtpConfig:
    data = {"host": "mail.test", "port": 587, "user": "u", "pass": "p", "from_address": "noreply@mail.test"}
    data.update(overrides)
    return SmtpConfig.model_validate(data)


class TestMailerTransport(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        patcher = patch("shared.services.mailer.smtplib.SMTP")
        self.smtp_cls = patcher.start()
        self.addCleanup(patcher.stop)
        self.client = self.smtp_cls.return_value
        self.client.__enter__.return_value = self.client
        self.client.__exit__.return_value = False

    async def test_sends_after_starttls_and_login(self):
        mailer = Mailer(timeout=1)
        await mailer.send_magic_link(_config(), to="alice@example.com", space_name="Project-X", link="http://api.test/x")

        self.client.starttls.assert_called_once()
        self.client.login.assert_called_once_with("u", "p")
        msg = self.client.send_message.call_args.args[0]
        self.assertEqual(msg["To"], "alice@example.com")
        self.assertIn("http://api.test/x", msg.get_body(preferencelist=("plain",)).get_content())

    async def test_connection_closed_when_login_fails(self):
        self.client.login.side_effect = smtplib.SMTPAuthenticationError(535, b"bad credentials")
        result = await Mailer(timeout=1).test_connection(_config())

        self.assertFalse(result.ok)
        self.assertEqual(result.message, "SMTP error: SMTPAuthenticationError")
        self.client.close.assert_called_once()

    async def test_connection_closed_when_starttls_fails(self):
        self.client.starttls.side_effect = smtplib.SMTPNotSupportedError("no STARTTLS")
        with self.assertRaises(MailerError):
            await Mailer(timeout=1).send(_config(), Mailer(timeout=1)._message(_config(), to="a@b.co", subject="x"))
        self.client.close.assert_called_once()
        self.client.send_message.assert_not_called()

    async def test_implicit_tls_skips_starttls(self):
        with patch("shared.services.mailer.smtplib.SMTP_SSL") as ssl_cls:
            ssl_client = ssl_cls.return_value
            ssl_client.__enter__.return_value = ssl_client
            ssl_client.__exit__.return_value = False
            result = await Mailer(timeout=1).test_connection(_config(port=465, secure=True))

        self.assertTrue(result.ok)
        self.smtp_cls.assert_not_called()
        ssl_client.starttls.assert_not_called()
        ssl_client.noop.assert_called_once()

    async def test_unconfigured_transport(self):
        with self.assertRaises(MailerError):
            await Mailer(timeout=1).send(_config(host=""), Mailer(timeout=1)._message(_config(), to="a@b.co", subject="x"))
        self.smtp_cls.assert_not_called()


if __name__ == "__main__":
    unittest.main()
