"""
请求签名测试
"""
import base64
import hashlib
import hmac
import re

import pytest

from subingest.services.signer import (
    HEADER_APP_PACKAGE,
    HEADER_APP_VERSION,
    HEADER_NONCE,
    HEADER_SIGNATURE,
    HEADER_TIMESTAMP,
    RequestSigner,
)

URL = "http://sub.example.net:8001/register?deviceId=abc"
TS = 1700000000000


@pytest.fixture
def signer():
    return RequestSigner(secret="test-secret", package_id="com.example.app", version="2.0.1")


def test_canonical_string_layout():
    assert RequestSigner.canonical_string("get", URL, TS, "n1", "pkg") == f"GET|{URL}|{TS}|n1|pkg"
    assert RequestSigner.canonical_string("POST", URL, TS, "n1", "pkg", '{"a":1}') == \
        f'POST|{URL}|{TS}|n1|pkg|{{"a":1}}'


def test_signature_is_base64_hmac_sha256(signer):
    expected = base64.b64encode(hmac.new(
        b"test-secret", f"GET|{URL}|{TS}|n1|com.example.app".encode(), hashlib.sha256
    ).digest()).decode()
    assert signer.sign("GET", URL, TS, "n1", "com.example.app") == expected


def test_signature_is_deterministic(signer):
    first = signer.sign("GET", URL, TS, "n1", "com.example.app")
    assert first == signer.sign("GET", URL, TS, "n1", "com.example.app")


@pytest.mark.parametrize("changed", [
    ("POST", URL, TS, "n1", "com.example.app", ""),
    ("GET", URL + "x", TS, "n1", "com.example.app", ""),
    ("GET", URL, TS + 1, "n1", "com.example.app", ""),
    ("GET", URL, TS, "n2", "com.example.app", ""),
    ("GET", URL, TS, "n1", "com.other.app", ""),
    ("GET", URL, TS, "n1", "com.example.app", "body"),
])
def test_signature_depends_on_every_input(signer, changed):
    base = signer.sign("GET", URL, TS, "n1", "com.example.app")
    assert signer.sign(*changed) != base


def test_different_secret_gives_different_signature(signer):
    other = RequestSigner(secret="other", package_id="com.example.app", version="2.0.1")
    assert other.sign("GET", URL, TS, "n1", "com.example.app") != \
        signer.sign("GET", URL, TS, "n1", "com.example.app")


def test_auth_headers(signer):
    headers = signer.create_auth_headers("GET", URL)
    assert set(headers) == {HEADER_APP_PACKAGE, HEADER_APP_VERSION, HEADER_TIMESTAMP,
                            HEADER_NONCE, HEADER_SIGNATURE}
    assert headers[HEADER_APP_PACKAGE] == "com.example.app"
    assert headers[HEADER_APP_VERSION] == "2.0.1"
    assert headers[HEADER_TIMESTAMP].isdigit()
    assert signer.verify("GET", URL, int(headers[HEADER_TIMESTAMP]), headers[HEADER_NONCE],
                         "com.example.app", "", headers[HEADER_SIGNATURE])


def test_nonce_is_urlsafe_without_padding():
    nonces = {RequestSigner.generate_nonce() for _ in range(20)}
    assert len(nonces) == 20
    for nonce in nonces:
        assert re.fullmatch(r"[A-Za-z0-9_-]{22}", nonce)


def test_each_call_gets_fresh_nonce(signer):
    first = signer.create_auth_headers("GET", URL)
    second = signer.create_auth_headers("GET", URL)
    assert first[HEADER_NONCE] != second[HEADER_NONCE]


def test_verify_rejects_stale_timestamp(signer):
    signature = signer.sign("GET", URL, TS, "n1", "com.example.app")
    assert signer.verify("GET", URL, TS, "n1", "com.example.app", "", signature, now_ms=TS + 60_000)
    assert not signer.verify("GET", URL, TS, "n1", "com.example.app", "", signature,
                             now_ms=TS + 6 * 60 * 1000)


def test_verify_rejects_package_mismatch_and_tampering(signer):
    signature = signer.sign("GET", URL, TS, "n1", "com.other.app")
    assert not signer.verify("GET", URL, TS, "n1", "com.other.app", "", signature, now_ms=TS)
    signature = signer.sign("GET", URL, TS, "n1", "com.example.app")
    assert not signer.verify("GET", URL + "&x=1", TS, "n1", "com.example.app", "", signature, now_ms=TS)
