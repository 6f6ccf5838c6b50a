"""
Payment Code Tests
==================

Receive and payment codes: encoding, decoding and rejection of malformed input.
"""

import json
from decimal import Decimal

import pytest

from pesawallet.codec import (
    DecodeError,
    DecodeFailure,
    PaymentIntent,
    ReceiveIntent,
    decode,
    encode,
    receive_intent_for,
)
from pesawallet.models import UserProfile

RECEIVE = ReceiveIntent(user_id="u-1", name="Amina Otieno", phone_number="0712345678")


class TestEncode:
    def test_receive_code_carries_type_tag(self):
        d = json.loads(encode(RECEIVE))

        assert d == {"type": "receive", "userId": "u-1", "name": "Amina Otieno", "phoneNumber": "0712345678"}

    def test_payment_code_omits_absent_fields(self):
        d = json.loads(encode(PaymentIntent(merchant_name="Java House")))

        assert d == {"type": "payment", "merchantName": "Java House"}

    def test_whole_amount_encodes_as_integer(self):
        raw = encode(PaymentIntent(merchant_name="Java House", amount=Decimal("250.00")))

        assert '"amount":250' in raw

    def test_unknown_value_refused(self):
        with pytest.raises(TypeError):
            encode({"type": "receive"})

    def test_receive_code_for_profile(self):
        user = UserProfile(id="u-1", first_name="Amina", last_name="Otieno", phone_number="0712345678")

        assert receive_intent_for(user) == RECEIVE

    def test_profile_without_name_still_round_trips(self):
        user = UserProfile.from_dict({"_id": "u-9", "phoneNumber": "0711000000"})

        intent = receive_intent_for(user)

        assert intent.name == "0711000000"
        assert decode(encode(intent)) == intent

    def test_profile_without_phone_cannot_be_encoded(self):
        user = UserProfile(id="u-9", first_name="Amina")

        with pytest.raises(ValueError):
            encode(receive_intent_for(user))

    @pytest.mark.parametrize(
        "intent",
        [
            ReceiveIntent(user_id="u-1", name="", phone_number="0712345678"),
            ReceiveIntent(user_id=" ", name="Amina", phone_number="0712345678"),
            PaymentIntent(merchant_name=""),
            PaymentIntent(merchant_name="M", reference=12),
        ],
    )
    def test_blank_or_mistyped_field_refused(self, intent):
        with pytest.raises(ValueError):
            encode(intent)

    @pytest.mark.parametrize(
        "amount",
        [Decimal("0"), Decimal("-5"), Decimal("12.345"), Decimal("0.10000000000000000001"), Decimal("1E+40")],
    )
    def test_amount_decode_would_refuse_is_not_encoded(self, amount):
        with pytest.raises(ValueError):
            encode(PaymentIntent(merchant_name="M", amount=amount))


class TestDecode:
    def test_receive_code_decodes(self):
        assert decode(encode(RECEIVE)) == RECEIVE

    def test_payment_code_keeps_exact_amount(self):
        intent = PaymentIntent(merchant_name="Java House", amount=Decimal("249.95"), reference="INV-7")

        decoded = decode(encode(intent))

        assert decoded == intent
        assert decoded.amount == Decimal("249.95")

    @pytest.mark.parametrize("amount", ["0.01", "999999999.99", "1000000000", "12.5"])
    def test_two_decimal_boundary_is_exact(self, amount):
        intent = PaymentIntent(merchant_name="Java House", amount=Decimal(amount))

        assert decode(encode(intent)).amount == Decimal(amount)

    def test_null_amount_and_absent_reference(self):
        decoded = decode('{"type": "payment", "merchantName": "Java House", "amount": null}')

        assert decoded == PaymentIntent(merchant_name="Java House")
        assert decoded.amount is None
        assert decoded.reference is None

    def test_unknown_fields_ignored(self):
        raw = json.dumps({"type": "receive", "userId": "u-1", "name": "Amina", "phoneNumber": "07", "avatar": "x"})

        assert decode(raw) == ReceiveIntent(user_id="u-1", name="Amina", phone_number="07")

    @pytest.mark.parametrize(
        "raw",
        [
            "not json",
            "",
            "[1, 2]",
            '"receive"',
            '{"type": "invoice", "merchantName": "x"}',
            '{"userId": "u-1", "name": "A", "phoneNumber": "07"}',
            '{"type": "receive", "userId": "u-1", "name": "A"}',
            '{"type": "receive", "userId": 7, "name": "A", "phoneNumber": "07"}',
            '{"type": "receive", "userId": "  ", "name": "A", "phoneNumber": "07"}',
            '{"type": "payment", "amount": 10}',
            '{"type": "payment", "merchantName": "M", "amount": "ten"}',
            '{"type": "payment", "merchantName": "M", "amount": -5}',
            '{"type": "payment", "merchantName": "M", "amount": 0}',
            '{"type": "payment", "merchantName": "M", "amount": true}',
            '{"type": "payment", "merchantName": "M", "amount": NaN}',
            '{"type": "payment", "merchantName": "M", "reference": 12}',
            '{"type": ["receive"]}',
            '{"type": "payment", "merchantName": "M", "amount": 1e40}',
            '{"type": "payment", "merchantName": "M", "amount": 100000000000000000000000000000000000000000}',
            '{"type": "payment", "merchantName": "M", "amount": 12.345}',
            '{"type": "payment", "merchantName": "M", "amount": 0.10000000000000000001}',
            '{"type": "payment", "merchantName": "M", "amount": 1000000000.01}',
        ],
    )
    def test_malformed_input_is_invalid_format(self, raw):
        result = decode(raw)

        assert isinstance(result, DecodeError)
        assert result.reason is DecodeFailure.INVALID_FORMAT

    @pytest.mark.parametrize("raw", [None, 42, b'{"type": "receive"}'])
    def test_non_text_input_is_invalid_format(self, raw):
        assert isinstance(decode(raw), DecodeError)

    def test_deeply_nested_input_does_not_raise(self):
        assert isinstance(decode("[" * 100000 + "]" * 100000), DecodeError)
