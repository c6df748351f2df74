"""Tests for webhook signing."""

import hashlib
import hmac

from relay.services.signing import generate_secret, sign, verify


PAYLOAD = '{"event":"order.created","id":42}'
SECRET = "a" * 64


class TestSign:
    def test_matches_hmac_sha256_hex(self):
        expected = hmac.new(SECRET.encode(), PAYLOAD.encode(), hashlib.sha256).hexdigest()
        assert sign(PAYLOAD, SECRET) == expected

    def test_is_deterministic(self):
        assert sign(PAYLOAD, SECRET) == sign(PAYLOAD, SECRET)

    def test_str_and_bytes_payloads_agree(self):
        assert sign(PAYLOAD, SECRET) == sign(PAYLOAD.encode("utf-8"), SECRET)

    def test_signs_raw_bytes_not_reserialized_json(self):
        spaced = '{"event": "order.created", "id": 42}'
        assert sign(spaced, SECRET) != sign(PAYLOAD, SECRET)


class TestVerify:
    def test_accepts_own_signature(self):
        assert verify(PAYLOAD, sign(PAYLOAD, SECRET), SECRET) is True

    def test_rejects_single_byte_payload_change(self):
        signature = sign(PAYLOAD, SECRET)
        for i in range(len(PAYLOAD)):
            mutated = PAYLOAD[:i] + chr(ord(PAYLOAD[i]) ^ 1) + PAYLOAD[i + 1:]
            assert verify(mutated, signature, SECRET) is False

    def test_rejects_single_byte_secret_change(self):
        signature = sign(PAYLOAD, SECRET)
        assert verify(PAYLOAD, signature, "b" + SECRET[1:]) is False

    def test_rejects_empty_and_garbage_signatures(self):
        assert verify(PAYLOAD, "", SECRET) is False
        assert verify(PAYLOAD, "not-hex", SECRET) is False
        assert verify(PAYLOAD, "é" * 64, SECRET) is False


def test_generate_secret_is_32_random_bytes_hex():
    first, second = generate_secret(), generate_secret()
    assert len(first) == 64
    int(first, 16)
    assert first != second
