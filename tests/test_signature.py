from datetime import datetime, timezone

import pytest

from proofpay.errors import InvalidSignature
from proofpay.identity.signature import (
    attest,
    build_link_message,
    build_receipt_message,
    parse_link_message,
    recover_signer,
    sign_text,
)

from conftest import ALICE, ALICE_KEY, BOB, BOB_KEY


def test_recover_signer_returns_lowercase_signer():
    message = build_link_message(ALICE, BOB)
    signature = sign_text(message, BOB_KEY)
    assert recover_signer(message, signature) == BOB


def test_recover_signer_accepts_raw_bytes():
    signature = sign_text("hello", ALICE_KEY)
    assert recover_signer("hello", bytes.fromhex(signature[2:])) == ALICE


def test_recover_signer_of_other_message_is_someone_else():
    signature = sign_text("hello", ALICE_KEY)
    assert recover_signer("hello!", signature) != ALICE


@pytest.mark.parametrize(
    "signature",
    ["", "0x", "0xzz", "0x1234", "0x" + "ff" * 65, b"\x01" * 64],
)
def test_recover_signer_rejects_malformed_signatures(signature):
    with pytest.raises(InvalidSignature):
        recover_signer("hello", signature)


def test_attest_keeps_recovered_signer_not_claimed_one():
    message = build_link_message(ALICE, BOB)
    signature = sign_text(message, ALICE_KEY)
    attestation = attest(message, signature, BOB)
    assert attestation.subject_address == BOB
    assert attestation.signer_address == ALICE
    assert not attestation.verified


def test_attest_with_garbage_signature_has_no_signer():
    attestation = attest("hello", "0xdeadbeef", BOB)
    assert attestation.signer_address is None
    assert not attestation.verified


def test_link_message_names_both_wallets():
    message = build_link_message(ALICE.upper().replace("0X", "0x"), BOB)
    assert f"I prove that I own address {BOB}" in message
    assert f"add it to my account {ALICE}" in message
    assert "\nTimestamp: " in message


def test_receipt_message_format():
    message = build_receipt_message(ALICE, "10.0", "USDC", BOB, "2024-03-09", "0xabc")
    assert message == (
        f"I confirm that I, the owner of wallet {ALICE}, received a payment of 10.0 USDC "
        f"from {BOB} on 2024-03-09 (tx hash: 0xabc).\nSigned via ProofPay."
    )


def test_parse_link_message():
    when = datetime(2026, 3, 1, 12, 30, tzinfo=timezone.utc)
    assert parse_link_message(build_link_message(ALICE, BOB, timestamp=when)) == (BOB, ALICE, when)
    assert parse_link_message("hello") is None
    assert parse_link_message(build_link_message(ALICE, BOB).replace("Timestamp: ", "Timestamp: x")) is None
