"""Tests for Pub/Sub push envelope decoding."""

from __future__ import annotations

import pytest

from inboxwatch.errors import MalformedRequestError
from inboxwatch.webhook import decode_envelope_data, parse_push_body
from tests.conftest import encode_push_data, push_body

pytestmark = pytest.mark.unit

NOTIFICATION = {"emailAddress": "a@x.com", "historyId": 150}


class TestDecodeEnvelopeData:
    @pytest.mark.parametrize(
        ("urlsafe", "pad"),
        [(False, True), (False, False), (True, True), (True, False)],
    )
    def test_both_alphabets_with_and_without_padding(self, urlsafe: bool, pad: bool) -> None:
        # "?>" tends to produce "+" and "/" in standard base64 output.
        payload = {"emailAddress": "a??>>@x.com", "historyId": 150}
        data = encode_push_data(payload, urlsafe=urlsafe, pad=pad)

        assert decode_envelope_data(data) == payload

    @pytest.mark.parametrize("data", [None, "", "!!!not base64!!!", "aGVsbG8", "WzEsIDJd"])
    def test_undecodable_returns_none(self, data: str | None) -> None:
        """Absent, non-base64, non-JSON ("hello") and non-object ("[1, 2]") data."""
        assert decode_envelope_data(data) is None


class TestParsePushBody:
    def test_data_fields(self) -> None:
        envelope, notification = parse_push_body(push_body(NOTIFICATION))

        assert notification.email_address == "a@x.com"
        assert notification.history_id == "150"
        assert envelope.message_id == "2070443601311540"

    def test_attribute_fallback_for_history_id(self) -> None:
        """Decoded data without historyId falls back to attributes.historyId."""
        body = push_body({"emailAddress": "a@x.com"}, historyId="155")

        _, notification = parse_push_body(body)

        assert notification.email_address == "a@x.com"
        assert notification.history_id == "155"

    def test_decoded_data_wins_over_attributes(self) -> None:
        body = push_body(NOTIFICATION, historyId="999", emailAddress="b@y.com")

        _, notification = parse_push_body(body)

        assert notification.history_id == "150"
        assert notification.email_address == "a@x.com"

    def test_undecodable_data_is_tolerated(self) -> None:
        body = {"message": {"data": "%%%", "attributes": {"historyId": "160"}}}

        _, notification = parse_push_body(body)

        assert notification.history_id == "160"
        assert notification.email_address is None

    def test_bare_message_object(self) -> None:
        body = {"data": encode_push_data(NOTIFICATION)}

        _, notification = parse_push_body(body)

        assert notification.history_id == "150"

    def test_empty_message(self) -> None:
        _, notification = parse_push_body({"message": {}})

        assert notification.history_id is None
        assert notification.email_address is None

    @pytest.mark.parametrize("body", [None, [], "text", 42])
    def test_non_object_body(self, body: object) -> None:
        with pytest.raises(MalformedRequestError, match="JSON object"):
            parse_push_body(body)

    def test_non_object_message(self) -> None:
        with pytest.raises(MalformedRequestError):
            parse_push_body({"message": "hello"})

    def test_invalid_attributes_shape(self) -> None:
        with pytest.raises(MalformedRequestError):
            parse_push_body({"message": {"attributes": ["historyId"]}})
