"""
Mail Transport
==============
The delivery side of the dispatch queue. send() never raises; it reports
{"success": bool, "message_id": str, "error": str} like every transport.
SMTP for sending, IMAP for polling replies.

Works with any SMTP/IMAP account (Gmail needs an app password).
"""

import email
import imaplib
import logging
import smtplib
from email.mime.text import MIMEText
from email.utils import formataddr, make_msgid, parseaddr
from typing import Any, Dict, List

log = logging.getLogger("ejendom.outreach.mailer")


class SmtpTransport:

    def __init__(self, config):
        self._host = config.smtp_host
        self._port = int(config.smtp_port or 587)
        self._user = config.smtp_user or config.sender_email
        self._password = config.smtp_password
        self._sender = config.sender_email or config.smtp_user
        self._sender_name = config.sender_name
        self._timeout = 30

    def is_configured(self) -> bool:
        return bool(self._host and self._sender and self._password)

    def send(self, message) -> Dict[str, Any]:
        if not self.is_configured():
            return {"success": False, "error": "SMTP not configured. Set SMTP_HOST, SENDER_EMAIL and SMTP_PASSWORD."}
        try:
            msg = MIMEText(message.body, "plain", "utf-8")
            msg["From"] = formataddr((self._sender_name, self._sender)) if self._sender_name else self._sender
            msg["To"] = formataddr((message.contact_name, message.to)) if message.contact_name else message.to
            msg["Subject"] = message.subject
            msg["Message-ID"] = make_msgid(domain=self._sender.split("@")[-1])

            with smtplib.SMTP(self._host, self._port, timeout=self._timeout) as server:
                server.starttls()
                server.login(self._user, self._password)
                server.send_message(msg)

            log.info(f"Sent '{message.subject}' to {message.to}")
            return {"success": True, "message_id": msg["Message-ID"]}
        except Exception as e:
            log.warning(f"SMTP send to {message.to} failed: {e}")
            return {"success": False, "error": str(e)}


class ImapInbox:

    def __init__(self, config):
        self._host = config.imap_host
        self._user = config.smtp_user or config.sender_email
        self._password = config.smtp_password

    def is_configured(self) -> bool:
        return bool(self._host and self._user and self._password)

    def poll(self, folder: str = "INBOX", unseen_only: bool = True, limit: int = 20) -> List[Dict[str, str]]:
        """Fetch new messages as {"from", "subject", "body", "message_id"} dicts."""
        messages = []
        try:
            imap = imaplib.IMAP4_SSL(self._host)
            imap.login(self._user, self._password)
            imap.select(folder)

            _, data = imap.search(None, "UNSEEN" if unseen_only else "ALL")
            ids = data[0].split()[-limit:] if data[0] else []

            for msg_id in ids:
                _, msg_data = imap.fetch(msg_id, "(RFC822)")
                parsed = email.message_from_bytes(msg_data[0][1])
                body = ""
                if parsed.is_multipart():
                    for part in parsed.walk():
                        if part.get_content_type() == "text/plain":
                            body = part.get_payload(decode=True).decode("utf-8", errors="replace")
                            break
                else:
                    body = parsed.get_payload(decode=True).decode("utf-8", errors="replace")

                messages.append({
                    "from": parseaddr(parsed.get("From", ""))[1].lower(),
                    "subject": parsed.get("Subject", ""),
                    "body": body.strip(),
                    "message_id": parsed.get("Message-ID", ""),
                })
                imap.store(msg_id, "+FLAGS", "\\Seen")

            imap.close()
            imap.logout()
        except Exception as e:
            log.error(f"IMAP poll error: {e}")

        return messages
