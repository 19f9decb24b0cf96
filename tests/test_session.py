import pytest

from proofpay.errors import AmbiguousIdentity, NotLinked
from proofpay.identity.session import IdentityState

from conftest import ALICE, BOB, CAROL, link_attestation


async def test_new_address_becomes_primary(session, registry):
    assert session.state is IdentityState.UNKNOWN
    snap = await session.connect(ALICE)

    assert snap.state == "primary-active"
    assert session.primary_address == session.active_address == ALICE
    assert session.linked_addresses == set()
    assert (await registry.get(ALICE)).is_primary


async def test_sub_wallet_resolves_to_its_primary(session, registry):
    await registry.promote_to_primary(ALICE)
    await registry.add_link(ALICE, BOB, "", link_attestation(ALICE, BOB))

    snap = await session.connect(BOB.upper().replace("0X", "0x"))

    assert session.state is IdentityState.SUB_WALLET_ACTIVE
    assert snap.primary_address == ALICE
    assert snap.active_address == BOB
    assert snap.linked_addresses == [BOB]


async def test_resolution_is_idempotent(session, registry):
    await session.connect(ALICE)
    await session.connect(ALICE)
    assert (await registry.get(ALICE)).is_primary
    assert await registry.list_links(ALICE) == []


async def test_reconnect_never_demotes_existing_primary(session, registry):
    await registry.promote_to_primary(ALICE)
    await registry.promote_to_primary(BOB)
    await session.connect(BOB)
    assert session.primary_address == BOB
    assert (await registry.get(ALICE)).is_primary


async def test_contradictory_records_fail_loudly(session, registry, db):
    await registry.promote_to_primary(ALICE)
    await registry.add_link(ALICE, BOB, "", link_attestation(ALICE, BOB))
    await db.execute("PRAGMA foreign_keys=OFF")
    await db.execute(
        "UPDATE wallet_links SET parent_address = ?, is_primary = 0 WHERE address = ?",
        (CAROL, ALICE),
    )
    with pytest.raises(AmbiguousIdentity):
        await session.connect(BOB)


async def test_disconnect_degrades_to_no_identity(alice_session):
    alice_session.disconnect()
    assert alice_session.state is IdentityState.UNKNOWN
    assert not alice_session.initialized
    assert not alice_session.owns(ALICE)


async def test_active_address_only_changes_during_a_switch(alice_session, registry):
    await registry.add_link(ALICE, BOB, "", link_attestation(ALICE, BOB))
    await alice_session.refresh()

    with pytest.raises(RuntimeError):
        alice_session.commit_active(BOB)

    alice_session.begin_switch(BOB)
    with pytest.raises(NotLinked):
        alice_session.commit_active(CAROL)
    alice_session.commit_active(BOB)
    alice_session.end_switch()
    assert alice_session.active_address == BOB
    assert alice_session.active_address in alice_session.identity_addresses
