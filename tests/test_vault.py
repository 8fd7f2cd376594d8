"""Test credential vault encryption, keyring and rotation."""
from datetime import timedelta

import pytest

from core.config import HubSettings, VaultSettings
from core.integrations.errors import AuthenticationFailed, InvalidFormat
from core.integrations.hub import IntegrationHub
from core.integrations.registry import ProviderRegistry
from core.integrations.types import ConnectionStatus, utcnow
from core.integrations import vault as vault_module
from core.integrations.vault import CredentialVault

from conftest import MASTER_KEY, ORG, StubProvider

CREDENTIALS = {"access_token": "xoxb-123", "refresh_token": "r-456", "expires_at": 1700000000, "scope": "a b"}


def make_vault(**kwargs):
    return CredentialVault(VaultSettings(master_key=MASTER_KEY, **kwargs))


def test_round_trip():
    vault = make_vault()
    assert vault.decrypt(vault.encrypt(CREDENTIALS)) == CREDENTIALS


def test_ciphertext_is_fresh_each_call():
    vault = make_vault()
    first, second = vault.encrypt(CREDENTIALS), vault.encrypt(CREDENTIALS)
    assert first != second
    iv1, salt1, _, _ = first.split(":")
    iv2, salt2, _, _ = second.split(":")
    assert iv1 != iv2
    assert salt1 != salt2


def test_blob_format():
    iv, salt, tag, ciphertext = make_vault().encrypt(CREDENTIALS).split(":")
    assert len(bytes.fromhex(iv)) == 12
    assert len(bytes.fromhex(salt)) == 32
    assert len(bytes.fromhex(tag)) == 16
    assert ciphertext
    assert "xoxb-123" not in ciphertext


def test_tampered_tag_fails_authentication():
    vault = make_vault()
    iv, salt, tag, ciphertext = vault.encrypt(CREDENTIALS).split(":")
    raw = bytearray(bytes.fromhex(tag))
    raw[0] ^= 0x01
    tampered = ":".join([iv, salt, raw.hex(), ciphertext])
    with pytest.raises(AuthenticationFailed):
        vault.decrypt(tampered)


def test_tampered_ciphertext_fails_authentication():
    vault = make_vault()
    iv, salt, tag, ciphertext = vault.encrypt(CREDENTIALS).split(":")
    raw = bytearray(bytes.fromhex(ciphertext))
    raw[-1] ^= 0xFF
    with pytest.raises(AuthenticationFailed):
        vault.decrypt(":".join([iv, salt, tag, raw.hex()]))


def test_wrong_key_fails_authentication():
    blob = make_vault().encrypt(CREDENTIALS)
    other = CredentialVault(VaultSettings(master_key="a-completely-different-key"))
    with pytest.raises(AuthenticationFailed):
        other.decrypt(blob)


@pytest.mark.parametrize("blob", ["", "abc", "a:b:c", "zz:zz:zz:zz", "00:11:22:33:44"])
def test_malformed_blob_is_invalid_format(blob):
    with pytest.raises(InvalidFormat):
        make_vault().decrypt(blob)


def test_kdf_iterations_floor():
    with pytest.raises(ValueError, match="kdf_iterations"):
        VaultSettings(master_key=MASTER_KEY, kdf_iterations=10_000)


def test_previous_key_still_decrypts():
    old = make_vault()
    blob = old.encrypt(CREDENTIALS)
    new = CredentialVault(VaultSettings(
        master_key="second-generation-key", key_version=2, previous_keys=((1, MASTER_KEY),),
    ))
    record, version = new.decrypt_with_version(blob)
    assert record == CREDENTIALS
    assert version == 1


def test_needs_rotation():
    vault = make_vault()
    assert not vault.needs_rotation(vault.metadata())
    assert vault.needs_rotation(None)
    assert vault.needs_rotation({"key_version": 1})

    stale = vault.metadata(utcnow() - timedelta(days=120))
    stale["rotated_at"] = (utcnow() - timedelta(days=91)).isoformat()
    assert vault.needs_rotation(stale)

    newer = CredentialVault(VaultSettings(
        master_key="second-generation-key", key_version=2, previous_keys=((1, MASTER_KEY),),
    ))
    assert newer.needs_rotation(vault.metadata())


@pytest.mark.asyncio
async def test_rotate_twice_is_safe(hub, connect):
    _, connection_id = await connect()
    assert await hub.vault.rotate(connection_id, ORG) is True
    assert await hub.vault.rotate(connection_id, ORG) is True

    connection = await hub.store.get_connection(connection_id, ORG)
    assert hub.vault.decrypt(connection.credentials)["access_token"] == "tok-1"
    rotations = await hub.store.list_logs(actions=["credentials_rotated"])
    assert len(rotations) == 2


@pytest.mark.asyncio
async def test_rotate_missing_connection_returns_false(hub):
    assert await hub.vault.rotate("missing", ORG) is False


@pytest.mark.asyncio
async def test_bulk_rotate_moves_to_new_key_version(hub, connect):
    _, connection_id = await connect()
    await connect()

    upgraded = IntegrationHub.create(
        store=hub.store,
        settings=HubSettings(vault=VaultSettings(
            master_key="second-generation-key", key_version=2, previous_keys=((1, MASTER_KEY),),
        )),
        registry=ProviderRegistry([StubProvider()]),
    )
    report = await upgraded.vault.bulk_rotate(ORG)
    assert report == {"rotated": 2, "failed": 0, "errors": []}

    connection = await hub.store.get_connection(connection_id, ORG)
    _, version = upgraded.vault.decrypt_with_version(connection.credentials)
    assert version == 2
    assert upgraded.vault.decrypt(connection.settings)["key_version"] == 2

    # Nothing left to rotate
    assert (await upgraded.vault.bulk_rotate(ORG))["rotated"] == 0


@pytest.mark.asyncio
async def test_vault_health(hub, connect):
    _, connection_id = await connect()
    await connect()
    await hub.store.update_connection(connection_id, status=ConnectionStatus.EXPIRED)

    report = await hub.vault.health(ORG)
    assert report["total"] == 2
    assert report["active"] == 1
    assert report["expired"] == 1
    assert report["needs_rotation"] == 0
    assert report["errors"] == 0


def test_stored_blob_derives_its_key_once(monkeypatch):
    derivations = []
    real_kdf = vault_module.PBKDF2HMAC

    def counting_kdf(**kwargs):
        derivations.append(kwargs["salt"])
        return real_kdf(**kwargs)

    monkeypatch.setattr(vault_module, "PBKDF2HMAC", counting_kdf)
    blob = make_vault().encrypt(CREDENTIALS)
    reader = make_vault()
    for _ in range(3):
        assert reader.decrypt(blob) == CREDENTIALS
    # One derivation to seal, one for the first read
    assert len(derivations) == 2
