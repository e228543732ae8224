"""
Tests for body decoding and the fetch-once body cache

Tests cover:
- MIME walking: multipart/alternative, attachments, single parts
- Transfer-encoding and charset fallbacks
- BodyFetcher cache behavior
"""
import pytest

from fakes import PLAIN_MESSAGE
from kestrel.core import BODY_ERROR_SENTINEL, EmailBody, Envelope
from kestrel.errors import ProtocolError, TransportError
from kestrel.imap.body import (
    BodyFetcher,
    decode_charset,
    decode_transfer_encoding,
    extract_body,
)


ALTERNATIVE_MESSAGE = (
    b"From: Alice <alice@example.com>\r\n"
    b"Subject: Hello\r\n"
    b"MIME-Version: 1.0\r\n"
    b'Content-Type: multipart/alternative; boundary="b1"\r\n'
    b"\r\n"
    b"--b1\r\n"
    b"Content-Type: text/plain; charset=utf-8\r\n"
    b"Content-Transfer-Encoding: 7bit\r\n"
    b"\r\n"
    b"Hello there\r\n"
    b"--b1\r\n"
    b"Content-Type: text/html; charset=utf-8\r\n"
    b"Content-Transfer-Encoding: quoted-printable\r\n"
    b"\r\n"
    b"<p>Hello =C3=A9</p>\r\n"
    b"--b1--\r\n"
)

ATTACHMENT_MESSAGE = (
    b"MIME-Version: 1.0\r\n"
    b'Content-Type: multipart/mixed; boundary="outer"\r\n'
    b"\r\n"
    b"--outer\r\n"
    b"Content-Type: text/plain; charset=us-ascii\r\n"
    b"\r\n"
    b"See attached.\r\n"
    b"--outer\r\n"
    b"Content-Type: text/plain; name=notes.txt\r\n"
    b"Content-Disposition: attachment; filename=notes.txt\r\n"
    b"\r\n"
    b"attachment text\r\n"
    b"--outer--\r\n"
)


class TestExtractBody:
    """Tests for turning a raw message into plain and HTML halves"""

    def test_alternative_prefers_html(self):
        body = extract_body(ALTERNATIVE_MESSAGE)

        assert body.plain.strip() == "Hello there"
        assert body.html.strip() == "<p>Hello é</p>"
        assert body.preferred == body.html

    def test_plain_only(self):
        body = extract_body(PLAIN_MESSAGE)

        assert body.html == ""
        assert body.plain.strip() == "Just text."
        assert body.preferred == body.plain

    def test_attachments_are_skipped(self):
        body = extract_body(ATTACHMENT_MESSAGE)
        assert body.plain.strip() == "See attached."

    def test_base64_single_part(self):
        raw = (
            b"Content-Type: text/plain; charset=utf-8\r\n"
            b"Content-Transfer-Encoding: base64\r\n"
            b"\r\n"
            b"Q2Fmw6kgb3V2ZXJ0\r\n"
        )
        assert extract_body(raw).plain == "Café ouvert"

    def test_single_part_html(self):
        raw = b"Content-Type: text/html\r\n\r\n<b>hi</b>"
        body = extract_body(raw)
        assert body.html == "<b>hi</b>"
        assert body.plain == ""

    def test_non_text_single_part_goes_to_plain(self):
        raw = (
            b"Content-Type: application/pdf\r\n"
            b"Content-Transfer-Encoding: base64\r\n"
            b"\r\n"
            b"JVBERi0xLjQK\r\n"
        )
        body = extract_body(raw)

        assert body.plain == "%PDF-1.4\n"
        assert body.html == ""
        assert body.preferred != BODY_ERROR_SENTINEL

    def test_attachment_only_multipart_yields_sentinel(self):
        raw = (
            b"Content-Type: multipart/mixed; boundary=b1\r\n"
            b"\r\n"
            b"--b1\r\n"
            b"Content-Type: application/pdf\r\n"
            b"Content-Disposition: attachment; filename=a.pdf\r\n"
            b"\r\n"
            b"%PDF\r\n"
            b"--b1--\r\n"
        )
        body = extract_body(raw)

        assert body.is_empty
        assert body.preferred == BODY_ERROR_SENTINEL

    def test_unknown_transfer_encoding_passes_through(self):
        raw = (
            b"Content-Type: text/plain; charset=utf-8\r\n"
            b"Content-Transfer-Encoding: x-rot13\r\n"
            b"\r\n"
            b"Uryyb"
        )
        assert extract_body(raw).plain == "Uryyb"

    def test_unknown_charset_falls_back_to_utf8(self):
        raw = (
            b"Content-Type: text/plain; charset=x-no-such-charset\r\n"
            b"Content-Transfer-Encoding: 8bit\r\n"
            b"\r\n"
            b"caf\xc3\xa9"
        )
        assert extract_body(raw).plain == "café"

    def test_bytes_codec_charset_falls_back_to_utf8(self):
        # "hex" is a real codec, but not one that decodes bytes to text
        raw = b"Content-Type: text/plain; charset=hex\r\n\r\nhello"
        assert extract_body(raw).plain == "hello"

    def test_multipart_without_boundary(self):
        raw = (
            b"MIME-Version: 1.0\r\n"
            b"Content-Type: multipart/mixed\r\n"
            b"\r\n"
            b"no boundary here\r\n"
        )
        with pytest.raises(ProtocolError):
            extract_body(raw)


class TestDecoding:
    """Tests for the individual decoding steps"""

    def test_quoted_printable(self):
        assert decode_transfer_encoding(b"caf=C3=A9=\r\n!", "Quoted-Printable") == b"caf\xc3\xa9!"

    def test_base64_missing_padding(self):
        assert decode_transfer_encoding(b"aGk", "base64") == b"hi"

    def test_invalid_base64_passes_through(self):
        assert decode_transfer_encoding(b"a", "base64") == b"a"

    def test_7bit_passes_through(self):
        assert decode_transfer_encoding(b"plain", "7bit") == b"plain"

    def test_undecodable_bytes_replaced(self):
        assert decode_charset(b"\xff", "utf-8") == "�"

    def test_declared_latin1(self):
        assert decode_charset(b"caf\xe9", "iso-8859-1") == "café"


class TestBodyFetcher:
    """Tests for fetch-once body caching"""

    async def _cache_message(self, store, account_id, uid=3):
        await store.insert_messages(account_id, "INBOX", {uid: Envelope(subject="cached")})

    async def test_fetches_once_then_serves_cache(self, store, sessions, server, account_id):
        await self._cache_message(store, account_id)
        server.mailboxes["INBOX"][3].raw = ALTERNATIVE_MESSAGE
        fetcher = BodyFetcher(store, sessions)

        first = await fetcher.get_body(account_id, "INBOX", 3)
        second = await fetcher.get_body(account_id, "INBOX", 3)

        assert first.strip() == "<p>Hello é</p>"
        assert second == first
        assert server.connections == 1

        cached = await store.get_body(account_id, "INBOX", 3)
        assert cached.plain.strip() == "Hello there"
        assert cached.html == first

    async def test_uses_body_peek(self, store, sessions, server, account_id):
        await self._cache_message(store, account_id)
        await BodyFetcher(store, sessions).fetch(account_id, "INBOX", 3)

        body_fetches = [args for name, args in server.commands
                        if name == "uid" and args[0] == "fetch"]
        assert body_fetches == [("fetch", "3", "(BODY.PEEK[])")]

    async def test_network_failure_caches_nothing(self, store, sessions, server, account_id):
        await self._cache_message(store, account_id)
        server.abort_on = "uid"

        with pytest.raises(TransportError):
            await BodyFetcher(store, sessions).fetch(account_id, "INBOX", 3)

        assert await store.get_body(account_id, "INBOX", 3) == EmailBody()
        assert server.logouts == 1

    async def test_missing_uid_is_protocol_error(self, store, sessions, account_id):
        await self._cache_message(store, account_id, uid=99)

        with pytest.raises(ProtocolError):
            await BodyFetcher(store, sessions).fetch(account_id, "INBOX", 99)
