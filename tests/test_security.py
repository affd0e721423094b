"""
Tests for signing, the coordinator key cache and hybrid envelope encryption.
"""

import asyncio
import base64
import dataclasses
import os

import pytest

from intentvault.protocol.errors import EncryptionError, KeyFetchError, PrivacyPayloadError


class FakeClock:
    def __init__(self, t=0.0):
        self.t = t

    def __call__(self):
        return self.t


def _fetcher(keyring, counter=None, delay=0.0):
    async def fetch():
        if counter is not None:
            counter.append(1)
        if delay:
            await asyncio.sleep(delay)
        return {"success": True, "publicKey": keyring.public_key_info()}

    return fetch


# ===========================================================================
# Signing
# ===========================================================================


class TestKeypair:
    def test_sign_and_verify(self):
        from intentvault.security.signing import Keypair, verify_signature

        kp = Keypair.generate()
        sig = kp.sign(b"payload")
        assert len(sig) == 64
        assert verify_signature(kp.address, b"payload", sig.hex())

    def test_tampered_data_fails(self):
        from intentvault.security.signing import Keypair, verify_signature

        kp = Keypair.generate()
        sig = kp.sign(b"payload")
        assert not verify_signature(kp.address, b"payload!", sig.hex())

    def test_malformed_inputs_return_false(self):
        from intentvault.security.signing import Keypair, verify_signature

        kp = Keypair.generate()
        assert not verify_signature("zz", b"x", "00" * 64)
        assert not verify_signature(kp.address, b"x", "not-hex")
        assert not verify_signature(kp.address, b"x", "00" * 10)

    def test_address_is_raw_public_key_hex(self):
        from intentvault.security.signing import Keypair

        kp = Keypair.generate()
        assert len(kp.address) == 64
        assert bytes.fromhex(kp.address) == kp.public_key_bytes
        assert len(kp.key_id) == 16

    def test_load_or_generate_persists(self, tmp_dir):
        from intentvault.security.signing import Keypair

        path = os.path.join(tmp_dir, "keys", "exec.pem")
        first = Keypair.load_or_generate(path)
        second = Keypair.load_or_generate(path)
        assert first.address == second.address


class TestIntentSignatures:
    def test_sign_and_verify_intent(self, signed_swap):
        from intentvault.security.signing import Keypair, verify_intent_signature

        user = Keypair.generate()
        signed = signed_swap(user, 1, 100)
        assert verify_intent_signature(signed)
        assert verify_intent_signature(signed, expected_user=user.address)

    def test_wrong_expected_user(self, signed_swap):
        from intentvault.security.signing import Keypair, verify_intent_signature

        user = Keypair.generate()
        signed = signed_swap(user, 1, 100)
        assert not verify_intent_signature(signed, expected_user=Keypair.generate().address)

    def test_modified_intent_fails(self, signed_swap):
        from intentvault.protocol.models import SignedIntent
        from intentvault.security.signing import Keypair, verify_intent_signature

        user = Keypair.generate()
        signed = signed_swap(user, 1, 100)
        forged = SignedIntent(
            intent=dataclasses.replace(signed.intent, nonce=2),
            signature=signed.signature,
        )
        assert not verify_intent_signature(forged)

    def test_cannot_sign_for_another_user(self):
        from intentvault.protocol.enums import IntentAction
        from intentvault.protocol.models import Intent
        from intentvault.security.signing import Keypair, sign_intent

        intent = Intent.draft(IntentAction.DEPOSIT, Keypair.generate().address, 0)
        with pytest.raises(PrivacyPayloadError):
            sign_intent(intent, Keypair.generate())

    def test_cannot_sign_plaintext_draft(self):
        from intentvault.protocol.enums import IntentAction
        from intentvault.protocol.models import Intent
        from intentvault.security.signing import Keypair, sign_intent

        kp = Keypair.generate()
        draft = Intent.draft(IntentAction.EXECUTE_SWAP, kp.address, 0, private_values={"amount": 5})
        with pytest.raises(PrivacyPayloadError):
            sign_intent(draft, kp)


class TestApprovalSignatures:
    def test_roundtrip(self):
        from intentvault.protocol.models import Approval
        from intentvault.security.signing import Keypair, sign_approval, verify_approval

        kp = Keypair.generate()
        approval = sign_approval(
            Approval(approved=True, intent_hash="0x01", enclave_id="e", execution_plan={"route": "x"}),
            kp,
        )
        assert verify_approval(approval, kp.address)
        approval.execution_plan["route"] = "y"
        assert not verify_approval(approval, kp.address)

    def test_unsigned_approval(self):
        from intentvault.protocol.models import Approval
        from intentvault.security.signing import Keypair, verify_approval

        approval = Approval(approved=True, intent_hash="0x01", enclave_id="e")
        assert not verify_approval(approval, Keypair.generate().address)


# ===========================================================================
# KeyCache
# ===========================================================================


class TestKeyCache:
    def test_single_fetch_within_ttl(self, keyring):
        from intentvault.security.key_cache import KeyCache

        calls = []
        clock = FakeClock()
        cache = KeyCache(_fetcher(keyring, calls), ttl=3600, clock=clock)

        async def run():
            first = await cache.get()
            clock.t = 3599
            second = await cache.get()
            return first, second

        first, second = asyncio.run(run())
        assert len(calls) == 1
        assert first.public_numbers() == second.public_numbers()

    def test_refetch_after_ttl(self, keyring):
        from intentvault.security.key_cache import KeyCache

        calls = []
        clock = FakeClock()
        cache = KeyCache(_fetcher(keyring, calls), ttl=3600, clock=clock)

        async def run():
            await cache.get()
            clock.t = 3600
            await cache.get()
            await cache.get()

        asyncio.run(run())
        assert len(calls) == 2

    def test_concurrent_misses_share_one_fetch(self, keyring):
        from intentvault.security.key_cache import KeyCache

        calls = []
        cache = KeyCache(_fetcher(keyring, calls, delay=0.02), ttl=60)

        async def run():
            return await asyncio.gather(*(cache.get() for _ in range(10)))

        keys = asyncio.run(run())
        assert len(calls) == 1
        assert cache.fetch_count == 1
        assert len({k.public_numbers().n for k in keys}) == 1

    def test_invalidate_forces_refetch(self, keyring):
        from intentvault.security.key_cache import KeyCache

        calls = []
        cache = KeyCache(_fetcher(keyring, calls), ttl=3600)

        async def run():
            await cache.get()
            cache.invalidate()
            await cache.get()

        asyncio.run(run())
        assert len(calls) == 2

    def test_entry_metadata(self, keyring):
        from intentvault.security.key_cache import KeyCache

        clock = FakeClock(100.0)
        cache = KeyCache(_fetcher(keyring), ttl=10, clock=clock)
        entry = asyncio.run(cache.get_entry())
        assert entry.key_id == keyring.key_id
        assert entry.fetched_at == 100.0
        assert entry.ttl == 10
        assert "BEGIN PUBLIC KEY" in entry.pem

    def test_fetch_failure_never_serves_stale_key(self, keyring):
        from intentvault.security.key_cache import KeyCache

        clock = FakeClock()
        state = {"fail": False}

        async def fetch():
            if state["fail"]:
                raise ConnectionError("coordinator down")
            return keyring.public_pem

        cache = KeyCache(fetch, ttl=10, clock=clock)

        async def run():
            await cache.get()
            state["fail"] = True
            clock.t = 11
            await cache.get()

        with pytest.raises(KeyFetchError, match="coordinator down"):
            asyncio.run(run())
        assert cache.entry is None

    def test_missing_key(self):
        from intentvault.security.key_cache import KeyCache

        async def fetch():
            return {"success": True}

        with pytest.raises(KeyFetchError, match="no public key"):
            asyncio.run(KeyCache(fetch).get())

    def test_malformed_key(self):
        from intentvault.security.key_cache import KeyCache

        async def fetch():
            return {"publicKey": {"pem": "-----BEGIN PUBLIC KEY-----\ngarbage\n-----END PUBLIC KEY-----"}}

        with pytest.raises(KeyFetchError, match="Malformed"):
            asyncio.run(KeyCache(fetch).get())

    def test_small_rsa_key_rejected(self):
        from cryptography.hazmat.primitives import serialization
        from cryptography.hazmat.primitives.asymmetric import rsa

        from intentvault.security.key_cache import parse_public_key

        weak = rsa.generate_private_key(public_exponent=65537, key_size=1024).public_key()
        pem = weak.public_bytes(
            serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo
        ).decode()
        with pytest.raises(KeyFetchError, match="too small"):
            parse_public_key(pem)


# ===========================================================================
# HybridEncryptor / CoordinatorKeyRing
# ===========================================================================


@pytest.fixture
def encryptor(keyring):
    from intentvault.security.hybrid import HybridEncryptor
    from intentvault.security.key_cache import KeyCache

    return HybridEncryptor(KeyCache(_fetcher(keyring)), test_harness=True, keyring=keyring)


def _flip_first_byte(b64):
    raw = bytearray(base64.b64decode(b64))
    raw[0] ^= 0x01
    return base64.b64encode(bytes(raw)).decode()


class TestHybridEncryptor:
    def test_roundtrip_on_test_harness(self, encryptor):
        env = asyncio.run(encryptor.encrypt(b'{"intent":"swap"}'))
        assert encryptor.decrypt(env) == b'{"intent":"swap"}'

    def test_envelope_shape(self, encryptor):
        env = asyncio.run(encryptor.encrypt(b"x"))
        data = env.to_dict()
        assert data["encryptedKeyFormat"] == "rsa-oaep"
        assert data["algorithm"] == "AES-GCM"
        assert data["encryptionType"] == "hybrid"
        assert len(base64.b64decode(data["iv"])) == 12
        assert len(base64.b64decode(data["encryptedKey"])) == 256
        # 1 byte plaintext + 16 byte GCM tag
        assert len(base64.b64decode(data["ciphertext"])) == 17

    def test_fresh_key_and_iv_per_call(self, encryptor):
        a = asyncio.run(encryptor.encrypt(b"same"))
        b = asyncio.run(encryptor.encrypt(b"same"))
        assert a.iv != b.iv
        assert a.wrapped_key != b.wrapped_key
        assert a.ciphertext != b.ciphertext

    def test_decrypt_disabled_outside_test_harness(self, keyring, encryptor):
        from intentvault.security.hybrid import HybridEncryptor
        from intentvault.security.key_cache import KeyCache

        env = asyncio.run(encryptor.encrypt(b"x"))
        production = HybridEncryptor(KeyCache(_fetcher(keyring)), keyring=keyring)
        with pytest.raises(EncryptionError, match="test-harness"):
            production.decrypt(env)

    def test_tampered_ciphertext_fails_authentication(self, encryptor):
        env = asyncio.run(encryptor.encrypt(b"secret"))
        tampered = dataclasses.replace(env, ciphertext=_flip_first_byte(env.ciphertext))
        with pytest.raises(EncryptionError, match="authentication"):
            encryptor.decrypt(tampered)

    def test_tampered_wrapped_key_fails(self, encryptor):
        env = asyncio.run(encryptor.encrypt(b"secret"))
        tampered = dataclasses.replace(env, wrapped_key=_flip_first_byte(env.wrapped_key))
        with pytest.raises(EncryptionError):
            encryptor.decrypt(tampered)

    def test_unknown_algorithm_refused(self, encryptor):
        env = asyncio.run(encryptor.encrypt(b"secret"))
        with pytest.raises(EncryptionError, match="key wrap"):
            encryptor.decrypt(dataclasses.replace(env, key_wrap_algorithm="rsa-pkcs1"))
        with pytest.raises(EncryptionError, match="cipher"):
            encryptor.decrypt(dataclasses.replace(env, symmetric_algorithm="AES-CBC"))

    def test_no_key_available(self):
        from intentvault.security.hybrid import HybridEncryptor
        from intentvault.security.key_cache import KeyCache

        async def fetch():
            raise ConnectionError("unreachable")

        with pytest.raises(EncryptionError, match="No coordinator key"):
            asyncio.run(HybridEncryptor(KeyCache(fetch)).encrypt(b"x"))


class TestCoordinatorKeyRing:
    def test_open_json(self, keyring, encryptor):
        env = asyncio.run(encryptor.encrypt_json({"b": 1, "a": [1, 2]}))
        assert keyring.open_json(env) == {"a": [1, 2], "b": 1}

    def test_public_key_info(self, keyring):
        info = keyring.public_key_info()
        assert info["format"] == "RSA-OAEP"
        assert info["keySize"] == 2048
        assert info["hash"] == "SHA-256"
        assert info["keyId"] == keyring.key_id
        assert info["pem"].startswith("-----BEGIN PUBLIC KEY-----")

    def test_other_key_cannot_open(self, encryptor):
        from intentvault.protocol.errors import SettlementError
        from intentvault.security.hybrid import CoordinatorKeyRing

        env = asyncio.run(encryptor.encrypt(b"secret"))
        with pytest.raises(SettlementError, match="unwrap"):
            CoordinatorKeyRing.generate().open_envelope(env)

    def test_load_or_generate_persists(self, tmp_dir):
        from intentvault.security.hybrid import CoordinatorKeyRing

        path = os.path.join(tmp_dir, "rsa.pem")
        first = CoordinatorKeyRing.load_or_generate(path)
        second = CoordinatorKeyRing.load_or_generate(path)
        assert first.key_id == second.key_id
