import hmac
import hashlib

from designauto.verify_signature import extract_hottok, verify_hmac_signature, verify_hottok


def test_verify_signature_valid():
    secret = "mysecret"
    body = b'{"hello":"world"}'
    mac = hmac.new(secret.encode(), msg=body, digestmod=hashlib.sha256).hexdigest()

    assert verify_hmac_signature(secret, body, mac) is True
    assert verify_hmac_signature(secret, body, f"sha256={mac}") is True


def test_verify_signature_invalid():
    secret = "mysecret"
    body = b'{"hello":"world"}'
    header = "sha256=wronghash"

    assert verify_hmac_signature(secret, body, header) is False
    assert verify_hmac_signature("", body, header) is False
    assert verify_hmac_signature(secret, body, "") is False


def test_verify_hottok():
    assert verify_hottok("abc123", "abc123") is True
    assert verify_hottok("abc123", " abc123 ") is True
    assert verify_hottok("abc123", "abc124") is False
    assert verify_hottok("abc123", None) is False
    assert verify_hottok("", "") is False


def test_extract_hottok_prefers_header_then_query_then_body():
    body = {"hottok": "from-body"}

    assert extract_hottok({"X-Hotmart-Hottok": "from-header"}, {"token": "from-query"}, body) == "from-header"
    assert extract_hottok({"X-Hotmart-Webhook-Token": "legacy"}, {}, body) == "legacy"
    assert extract_hottok({}, {"token": "from-query"}, body) == "from-query"
    assert extract_hottok({}, {}, body) == "from-body"
    assert extract_hottok({}, {}, ["not", "a", "dict"]) is None
