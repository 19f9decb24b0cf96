import pytest

from proofpay.errors import InvoiceNotFound, ValidationError
from proofpay.identity.signature import sign_text
from proofpay.payments.invoices import InvoiceStore
from proofpay.storage.models import (
    InvoiceStatus,
    PaymentStatus,
    SignatureStatus,
    TransactionState,
    TransactionStatus,
    utcnow,
)

from conftest import ALICE, ALICE_KEY, BOB, BOB_KEY, DAVE_KEY, PAYER, USDC, link_attestation


@pytest.fixture
def invoices(db, store, registry, chain_data, bus) -> InvoiceStore:
    chain_data.decimals[(8453, USDC)] = 6
    s = InvoiceStore(db, store, registry, chain_data)
    s.attach(bus)
    return s


async def _paid_invoice(store, invoices, request, tx_hash="0xfeed"):
    invoice = await invoices.create_for_request(request)
    await store.transition(
        request.id, PaymentStatus.PENDING, PaymentStatus.PAID,
        payer_address=PAYER, settlement_tx_hash=tx_hash,
    )
    return await invoices.get(invoice.document_id)


async def test_create_for_request_numbers_documents_per_day(alice_session, store, draft, invoices):
    first = await invoices.create_for_request(await store.create(draft(), alice_session))
    second = await invoices.create_for_request((await store.create(draft(), alice_session)).id)

    today = utcnow().strftime("%Y%m%d")
    assert first.document_id == f"INV-{today}-001"
    assert second.document_id == f"INV-{today}-002"
    assert first.decimals == 6
    assert first.wallet_address == ALICE
    assert first.status is InvoiceStatus.UNPAID


async def test_one_invoice_per_pending_request(alice_session, store, draft, invoices):
    req = await store.create(draft(), alice_session)
    await invoices.create_for_request(req)
    with pytest.raises(ValidationError):
        await invoices.create_for_request(req)

    cancelled = await store.cancel((await store.create(draft(), alice_session)).id)
    with pytest.raises(ValidationError):
        await invoices.create_for_request(cancelled)


async def test_paid_request_marks_invoice_paid(alice_session, store, draft, invoices):
    req = await store.create(draft(), alice_session)
    paid = await _paid_invoice(store, invoices, req)

    assert paid.status is InvoiceStatus.PAID
    assert paid.transaction_hash == "0xfeed"
    assert paid.block_number == 1234
    assert paid.from_address == PAYER
    assert paid.paid_at is not None
    assert invoices.explorer_url(paid) == "https://basescan.org/tx/0xfeed"


async def test_block_number_unknown_while_pending(alice_session, store, draft, invoices, chain_data):
    chain_data.statuses["0xslow"] = TransactionStatus(tx_hash="0xslow", state=TransactionState.PENDING)
    req = await store.create(draft(), alice_session)
    paid = await _paid_invoice(store, invoices, req, "0xslow")
    assert paid.status is InvoiceStatus.PAID
    assert paid.block_number is None


async def test_cancelled_request_cancels_invoice(alice_session, store, draft, invoices):
    req = await store.create(draft(), alice_session)
    invoice = await invoices.create_for_request(req)
    await store.cancel(req.id, alice_session)
    assert (await invoices.get(invoice.document_id)).status is InvoiceStatus.CANCELLED


async def test_sign_by_receiving_wallet(alice_session, store, draft, invoices):
    paid = await _paid_invoice(store, invoices, await store.create(draft(), alice_session))
    message = invoices.receipt_message(paid)

    signed = await invoices.sign(paid.document_id, sign_text(message, ALICE_KEY))

    assert signed.signature_status is SignatureStatus.SIGNED
    assert signed.signed_by == ALICE
    assert signed.signed_message == message
    assert "0xfeed" in message


async def test_sign_by_linked_sub_wallet_counts(alice_session, registry, store, draft, invoices):
    await registry.add_link(ALICE, BOB, "", link_attestation(ALICE, BOB))
    paid = await _paid_invoice(store, invoices, await store.create(draft(), alice_session))

    signed = await invoices.sign(paid.document_id, sign_text(invoices.receipt_message(paid), BOB_KEY))
    assert signed.signature_status is SignatureStatus.SIGNED
    assert signed.signed_by == BOB


async def test_signature_from_stranger_is_a_mismatch_and_final(alice_session, store, draft, invoices):
    paid = await _paid_invoice(store, invoices, await store.create(draft(), alice_session))
    message = invoices.receipt_message(paid)

    signed = await invoices.sign(paid.document_id, sign_text(message, DAVE_KEY))
    assert signed.signature_status is SignatureStatus.MISMATCH

    with pytest.raises(ValidationError):
        await invoices.sign(paid.document_id, sign_text(message, ALICE_KEY))
    assert (await invoices.get(paid.document_id)).signature_status is SignatureStatus.MISMATCH


async def test_garbage_signature_is_unverifiable(alice_session, store, draft, invoices):
    paid = await _paid_invoice(store, invoices, await store.create(draft(), alice_session))
    signed = await invoices.sign(paid.document_id, "0x1234")
    assert signed.signature_status is SignatureStatus.UNVERIFIABLE
    assert signed.signed_by is None


async def test_unpaid_invoice_cannot_be_signed(alice_session, store, draft, invoices):
    invoice = await invoices.create_for_request(await store.create(draft(), alice_session))
    with pytest.raises(ValidationError):
        await invoices.sign(invoice.document_id, "0x1234")


async def test_missing_invoice(invoices):
    with pytest.raises(InvoiceNotFound):
        await invoices.get("INV-19700101-001")
    assert await invoices.list_for_wallets([]) == []


async def test_list_for_wallets(alice_session, store, draft, invoices):
    invoice = await invoices.create_for_request(await store.create(draft(), alice_session))
    listed = await invoices.list_for_wallets([ALICE.upper().replace("0X", "0x")])
    assert [i.document_id for i in listed] == [invoice.document_id]
