"""
Tests for apex/utils/redaction.py
"""
from apex.utils.redaction import (
    REDACTED,
    REDACTED_CONTENT,
    REDACTED_SECRET,
    looks_like_card_number,
    mask_phone,
    redact_payload,
)


class TestRedactPayload:
    def test_pii_keys_in_any_spelling(self):
        payload = {"phoneNumber": "5125550123", "phone_number": "x", "customer-email": "a@b.c"}
        redacted = redact_payload(payload)
        assert redacted == {"phoneNumber": REDACTED, "phone_number": REDACTED, "customer-email": REDACTED}

    def test_content_and_secret_keys(self):
        payload = {
            "message": {
                "artifact": {"transcript": "AI: hello", "messages": [{"role": "user"}]},
                "analysis": {"summary": "Quote requested"},
            },
            "apiKey": "sk_live_123",
            "Authorization": "Bearer abc",
        }
        redacted = redact_payload(payload)
        assert redacted["message"]["artifact"] == {"transcript": REDACTED_CONTENT, "messages": REDACTED_CONTENT}
        assert redacted["message"]["analysis"]["summary"] == REDACTED_CONTENT
        assert redacted["apiKey"] == REDACTED_SECRET
        assert redacted["Authorization"] == REDACTED_SECRET

    def test_e164_values_anywhere(self):
        redacted = redact_payload({"customer": {"number": "+15125550123"}, "notes": ["+442071838750", "hello"]})
        assert redacted["customer"]["number"] == REDACTED
        assert redacted["notes"] == [REDACTED, "hello"]

    def test_customer_name_and_local_number(self):
        payload = {"customer": {"name": "Jane Doe", "number": "(512) 555-0123"}}
        assert redact_payload(payload) == {"customer": {"name": REDACTED, "number": REDACTED}}

    def test_stripe_customer_details(self):
        payload = {
            "customer_details": {
                "name": "Jane Doe",
                "email": "jane@example.com",
                "address": {"line1": "1 Main St", "city": "Austin", "postal_code": "78701"},
            },
            "shipping": {"address": None},
        }
        redacted = redact_payload(payload)
        assert redacted["customer_details"] == {"name": REDACTED, "email": REDACTED, "address": REDACTED}
        assert redacted["shipping"] == {"address": None}
        assert "Main St" not in str(redacted)

    def test_card_numbers(self):
        assert redact_payload({"ref": "4242 4242 4242 4242"})["ref"] == REDACTED
        assert looks_like_card_number("4242424242424241") is False

    def test_none_values_stay_none(self):
        assert redact_payload({"transcript": None, "token": None}) == {"transcript": None, "token": None}

    def test_input_is_not_mutated(self):
        payload = {"customer": {"phone": "+15125550123"}, "id": "evt_1", "amount": 100}
        redacted = redact_payload(payload)
        assert payload["customer"]["phone"] == "+15125550123"
        assert redacted["id"] == "evt_1"
        assert redacted["amount"] == 100


class TestMaskPhone:
    def test_keeps_last_four(self):
        assert mask_phone("+15125550123") == "***-0123"

    def test_short_or_empty(self):
        assert mask_phone("12") == "***"
        assert mask_phone(None) == "***"
