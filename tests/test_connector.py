import pytest

from proofpay.errors import ConnectorUnavailable, ProviderError, UserRejected
from proofpay.identity.signature import recover_signer
from proofpay.wallet.connector import (
    KeystoreWalletProvider,
    WalletProvider,
    create_keystore,
    decrypt_key,
    list_keystores,
)

from conftest import ALICE, ALICE_KEY, BOB


@pytest.fixture
def wallet_dir(tmp_path):
    path = tmp_path / "wallet"
    assert create_keystore(path, "hunter2", ALICE_KEY) == ALICE
    return path


def _provider(wallet_dir, choice=ALICE, password="hunter2"):
    async def select(addresses):
        return choice

    async def get_password(address):
        return password

    return KeystoreWalletProvider(wallet_dir, select, get_password)


def test_keystore_files(wallet_dir):
    assert list_keystores(wallet_dir) == [ALICE]
    assert list_keystores(wallet_dir / "missing") == []
    assert bytes(decrypt_key(wallet_dir, ALICE, "hunter2")) == bytes.fromhex(ALICE_KEY[2:])

    with pytest.raises(ValueError):
        decrypt_key(wallet_dir, ALICE, "wrong")
    with pytest.raises(FileNotFoundError):
        decrypt_key(wallet_dir, BOB, "hunter2")
    with pytest.raises(FileExistsError):
        create_keystore(wallet_dir, "again", ALICE_KEY)


async def test_connect_sign_disconnect(wallet_dir):
    provider = _provider(wallet_dir)
    assert isinstance(provider, WalletProvider)

    assert await provider.connect() == ALICE
    signature = await provider.sign("hello")
    assert recover_signer("hello", signature) == ALICE

    await provider.disconnect()
    with pytest.raises(ConnectorUnavailable):
        await provider.sign("hello")


async def test_cancelled_picker_and_prompt_are_rejections(wallet_dir):
    with pytest.raises(UserRejected):
        await _provider(wallet_dir, choice=None).connect()

    provider = _provider(wallet_dir, password=None)
    await provider.connect()
    with pytest.raises(UserRejected):
        await provider.sign("hello")


async def test_wrong_password_is_a_provider_error(wallet_dir):
    provider = _provider(wallet_dir, password="wrong")
    await provider.connect()
    with pytest.raises(ProviderError):
        await provider.sign("hello")


async def test_unknown_account_or_empty_dir(wallet_dir, tmp_path):
    with pytest.raises(ConnectorUnavailable):
        await _provider(wallet_dir, choice=BOB).connect()
    with pytest.raises(ConnectorUnavailable):
        await _provider(tmp_path / "empty").connect()


async def test_account_change_notifies_listeners(wallet_dir):
    provider = _provider(wallet_dir)
    seen = []

    async def listener(address):
        seen.append(address)

    async def broken(address):
        raise RuntimeError("listener failed")

    provider.on_account_changed(broken)
    provider.on_account_changed(listener)
    await provider.switch_account(BOB.upper().replace("0X", "0x"))
    await provider.switch_account(None)

    assert seen == [BOB, None]
    assert provider.connected_address is None
