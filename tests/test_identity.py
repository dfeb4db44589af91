"""Identity binder and npub formatting."""

import asyncio

import pytest

from npubhealth.common.errors import AuthUnavailable
from npubhealth.payment.identity import IdentityBinder, encode_npub, normalize_public_key


PUBKEY = "3bf0c63fcb93463407af97a5e5ee64fa883d107ef9e558472c4eb9aaaefa459d"
NPUB = "npub180cvv07tjdrrgpa0j7j7tmnyl2yr6yr7l8j4s3evf6u64th6gkwsyjh6w6"


class Provider:
    def __init__(self, result=PUBKEY, delay=0.0) -> None:
        self.result = result
        self.delay = delay

    async def get_public_key(self) -> str:
        if self.delay:
            await asyncio.sleep(self.delay)
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


def test_encode_npub_matches_nip19_vector():
    """Encoding matches the published NIP-19 test vector."""

    assert encode_npub(PUBKEY) == NPUB


def test_normalize_rejects_bad_keys():
    """Only 64-character hex keys are accepted."""

    assert normalize_public_key(PUBKEY.upper()) == PUBKEY
    with pytest.raises(ValueError):
        normalize_public_key("abc")
    with pytest.raises(ValueError):
        encode_npub("zz" * 32)


@pytest.mark.asyncio
async def test_login_binds_key_pair():
    """Login binds the normalized key and its npub until logout."""

    binder = IdentityBinder(Provider(f"  {PUBKEY.upper()} "))

    assert await binder.login() == PUBKEY
    assert binder.is_authenticated
    assert binder.npub == NPUB

    binder.logout()
    assert binder.public_key is None
    assert binder.npub is None


@pytest.mark.asyncio
async def test_login_without_provider():
    """Without a signing extension login raises AuthUnavailable."""

    with pytest.raises(AuthUnavailable):
        await IdentityBinder(None).login()


@pytest.mark.asyncio
@pytest.mark.parametrize("result", [RuntimeError("user rejected"), "not-a-key"])
async def test_login_provider_failures(result):
    """Provider errors and malformed keys both become AuthUnavailable."""

    binder = IdentityBinder(Provider(result))
    with pytest.raises(AuthUnavailable):
        await binder.login()
    assert not binder.is_authenticated


@pytest.mark.asyncio
async def test_login_times_out():
    """A provider that never answers times out as AuthUnavailable."""

    binder = IdentityBinder(Provider(delay=1.0), timeout=0.01)
    with pytest.raises(AuthUnavailable):
        await binder.login()


@pytest.mark.asyncio
async def test_require_public_key_uses_restored_key():
    """A restored key is used without asking the provider."""

    binder = IdentityBinder(None)
    binder.restore(PUBKEY)

    assert await binder.require_public_key() == PUBKEY


def test_restore_discards_invalid_key():
    """Invalid or empty persisted keys log the binder out."""

    binder = IdentityBinder(None)
    binder.restore("garbage")
    assert not binder.is_authenticated
    binder.restore(None)
    assert binder.public_key is None
