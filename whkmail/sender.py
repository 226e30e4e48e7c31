"""SMTP submission with SASL XOAUTH2 authentication."""

from __future__ import annotations

import smtplib
import ssl
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from email.utils import parseaddr

from whkmail.outgoing import OutgoingMessage


class SendError(Exception):
    """Raised when a message cannot be delivered."""


class XOAuth2Auth:
    """The single-step SASL XOAUTH2 mechanism."""

    mechanism = "XOAUTH2"

    def __init__(self, email: str, token: str) -> None:
        self.email = email
        self.token = token

    def start(self, server_tls: bool) -> tuple[str, bytes]:
        """Return the mechanism name and initial response; refuses plaintext links."""
        if not server_tls:
            raise SendError("xoauth2: refusing to send credentials over a non-TLS connection")
        payload = f"user={self.email}\x01auth=Bearer {self.token}\x01\x01"
        return self.mechanism, payload.encode()

    def next(self, challenge: bytes, more: bool) -> None:
        """A further challenge means the token was rejected."""
        if more:
            text = challenge.decode(errors="replace")
            raise SendError(f"xoauth2: server rejected token: {text}")
        return None


def bare_address(addr: str) -> str:
    """Extract the addr-spec from 'Name <a@b>', '<a@b>' or 'a@b'."""
    _, parsed = parseaddr(addr)
    if parsed and "@" in parsed:
        return parsed
    return addr.strip()


@contextmanager
def _step(label: str) -> Iterator[None]:
    try:
        yield
    except SendError as exc:
        raise SendError(f"{label}: {exc}") from exc
    except (smtplib.SMTPException, OSError) as exc:
        raise SendError(f"{label}: {exc}") from exc


class SmtpSender:
    """Submits messages for one account; each send uses a fresh connection."""

    def __init__(self, host: str, port: int, email: str, token: Callable[[], str]) -> None:
        self.host = host
        self.port = port
        self.email = email
        self._token = token

    def send(self, message: OutgoingMessage) -> None:
        """Deliver one message: token, connect with TLS, AUTH, MAIL/RCPT/DATA."""
        message = replace(
            message,
            sender=message.sender or self.email,
            date=message.date or datetime.now().astimezone(),
        )
        recipients = message.recipients()
        if not recipients:
            raise SendError("smtp: no recipients")

        try:
            token = self._token()
        except Exception as exc:
            raise SendError(f"get token: {exc}") from exc

        with _step("dial"):
            conn = self._dial()
        try:
            self._deliver(conn, message, recipients, token)
        finally:
            try:
                conn.close()
            except OSError:
                pass

    def _dial(self) -> smtplib.SMTP:
        context = ssl.create_default_context()
        if self.port == 465:
            conn: smtplib.SMTP = smtplib.SMTP_SSL(self.host, self.port, context=context)
            self._hello(conn)
            return conn
        conn = smtplib.SMTP(self.host, self.port)
        try:
            self._hello(conn)
            with _step("STARTTLS"):
                conn.starttls(context=context)
            self._hello(conn)
        except BaseException:
            conn.close()
            raise
        return conn

    @staticmethod
    def _hello(conn: smtplib.SMTP) -> None:
        with _step("EHLO"):
            code, reply = conn.ehlo("localhost")
            if code != 250:
                raise SendError(f"{code} {reply!r}")

    def _deliver(
        self,
        conn: smtplib.SMTP,
        message: OutgoingMessage,
        recipients: list[str],
        token: str,
    ) -> None:
        auth = XOAuth2Auth(self.email, token)
        with _step("auth"):
            mechanism, initial = auth.start(isinstance(getattr(conn, "sock", None), ssl.SSLSocket))

            def respond(challenge: bytes | None = None) -> str:
                if challenge is None:
                    return initial.decode("ascii")
                auth.next(challenge, True)
                return ""

            conn.auth(mechanism, respond)

        with _step("MAIL FROM"):
            code, reply = conn.mail(bare_address(message.sender))
            if code != 250:
                raise SendError(f"{code} {reply!r}")

        for rcpt in recipients:
            with _step(f"RCPT TO {rcpt}"):
                code, reply = conn.rcpt(bare_address(rcpt))
                if code not in (250, 251):
                    raise SendError(f"{code} {reply!r}")

        with _step("DATA"):
            code, reply = conn.data(message.rfc5322().encode("utf-8"))
        if code != 250:
            raise SendError(f"close body: {code} {reply!r}")

        with _step("QUIT"):
            conn.quit()