# SPDX-License-Identifier: BSD-2
import hashlib
import hmac
import unittest

from tpm2_pysession import *
from tpm2_pysession.derivation import (
    check_response_hmac,
    command_hmac,
    cp_hash,
    hmac_key,
    new_nonce,
    response_hmac,
    rp_hash,
    session_key,
    trim_auth,
)
from tpm2_pysession.internal.crypto import _kdfa


def kdfa_reference(name, key, label, context_u, context_v, bits):
    out = b""
    counter = 1
    while len(out) * 8 < bits:
        out += hmac.new(
            key,
            counter.to_bytes(4, "big")
            + label
            + b"\x00"
            + context_u
            + context_v
            + bits.to_bytes(4, "big"),
            name,
        ).digest()
        counter += 1
    return out[: bits // 8]


nonce_tpm = bytes(range(32))
nonce_caller = bytes(range(100, 116))


class DerivationTest(unittest.TestCase):
    def test_kdfa(self):
        for name, alg in (
            ("sha256", TPM2_ALG.SHA256),
            ("sha384", TPM2_ALG.SHA384),
            ("sha512", TPM2_ALG.SHA512),
        ):
            for bits in (128, 256, 384, 640):
                got = _kdfa(alg, b"key", b"ATH", nonce_tpm, nonce_caller, bits)
                self.assertEqual(
                    got, kdfa_reference(name, b"key", b"ATH", nonce_tpm, nonce_caller, bits)
                )
                self.assertEqual(len(got), bits // 8)

    def test_trim_auth(self):
        self.assertEqual(trim_auth(b"secret\x00\x00"), b"secret")
        self.assertEqual(trim_auth(b"\x00se\x00cret"), b"\x00se\x00cret")
        self.assertEqual(trim_auth(b""), b"")

    def test_session_key_unbound_unsalted(self):
        self.assertEqual(session_key(TPM2_ALG.SHA256, nonce_tpm, nonce_caller), b"")

    def test_session_key_bound(self):
        skey = session_key(TPM2_ALG.SHA256, nonce_tpm, nonce_caller, bind_auth=b"bindpassword")
        expected = kdfa_reference(
            "sha256", b"bindpassword", b"ATH", nonce_tpm, nonce_caller, 256
        )
        self.assertEqual(skey, expected)

        trimmed = session_key(
            TPM2_ALG.SHA256, nonce_tpm, nonce_caller, bind_auth=b"bindpassword\x00"
        )
        self.assertEqual(trimmed, skey)

    def test_session_key_salted(self):
        salt = b"\x55" * 32
        skey = session_key(TPM2_ALG.SHA384, nonce_tpm, nonce_caller, salt=salt)
        self.assertEqual(
            skey, kdfa_reference("sha384", salt, b"ATH", nonce_tpm, nonce_caller, 384)
        )

        both = session_key(
            TPM2_ALG.SHA384, nonce_tpm, nonce_caller, bind_auth=b"pw", salt=salt
        )
        self.assertEqual(
            both,
            kdfa_reference("sha384", b"pw" + salt, b"ATH", nonce_tpm, nonce_caller, 384),
        )

    def test_session_key_empty_bind_auth(self):
        # bound to an entity without auth value, the key still derives from the nonces
        skey = session_key(TPM2_ALG.SHA256, nonce_tpm, nonce_caller, bind_auth=b"")
        self.assertEqual(len(skey), 32)

    def test_session_key_depends_on_nonces(self):
        a = session_key(TPM2_ALG.SHA256, nonce_tpm, nonce_caller, bind_auth=b"x")
        b = session_key(TPM2_ALG.SHA256, nonce_tpm, nonce_caller[::-1], bind_auth=b"x")
        self.assertNotEqual(a, b)

    def test_hmac_key(self):
        self.assertEqual(hmac_key(b"skey", b"auth\x00"), b"skeyauth")
        self.assertEqual(hmac_key(b"skey", b"auth", include_auth=False), b"skey")
        self.assertEqual(hmac_key(b"", b"mysecret"), b"mysecret")

    def test_cp_hash(self):
        names = [b"\x40\x00\x00\x01", b"\x00\x0b" + b"\x11" * 32]
        params = b"\x00\x04abcd"
        expected = hashlib.sha256(
            TPM2_CC.NV_Write.to_bytes(4, "big") + names[0] + names[1] + params
        ).digest()
        self.assertEqual(cp_hash(TPM2_ALG.SHA256, TPM2_CC.NV_Write, names, params), expected)

    def test_rp_hash(self):
        expected = hashlib.sha384(
            b"\x00\x00\x00\x00" + TPM2_CC.Unseal.to_bytes(4, "big") + b"\x00\x02hi"
        ).digest()
        self.assertEqual(rp_hash(TPM2_ALG.SHA384, 0, TPM2_CC.Unseal, b"\x00\x02hi"), expected)

    def test_command_hmac(self):
        cphash = b"\x01" * 32
        attrs = TPMA_SESSION.CONTINUESESSION | TPMA_SESSION.DECRYPT
        got = command_hmac(
            TPM2_ALG.SHA256, b"key", cphash, nonce_caller, nonce_tpm, attrs
        )
        expected = hmac.new(
            b"key", cphash + nonce_caller + nonce_tpm + b"\x21", "sha256"
        ).digest()
        self.assertEqual(got, expected)

    def test_command_hmac_extra_nonces(self):
        cphash = b"\x01" * 32
        nonce_decrypt = b"\x02" * 32
        nonce_encrypt = b"\x03" * 32
        got = command_hmac(
            TPM2_ALG.SHA256,
            b"key",
            cphash,
            nonce_caller,
            nonce_tpm,
            TPMA_SESSION.CONTINUESESSION,
            nonce_decrypt,
            nonce_encrypt,
        )
        expected = hmac.new(
            b"key",
            cphash + nonce_caller + nonce_tpm + nonce_decrypt + nonce_encrypt + b"\x01",
            "sha256",
        ).digest()
        self.assertEqual(got, expected)

    def test_response_hmac(self):
        rphash = b"\x04" * 32
        new_tpm = b"\x05" * 32
        digest = response_hmac(
            TPM2_ALG.SHA256, b"key", rphash, new_tpm, nonce_caller, TPMA_SESSION.ENCRYPT
        )
        expected = hmac.new(
            b"key", rphash + new_tpm + nonce_caller + b"\x40", "sha256"
        ).digest()
        self.assertEqual(digest, expected)
        self.assertTrue(
            check_response_hmac(
                TPM2_ALG.SHA256,
                b"key",
                digest,
                rphash,
                new_tpm,
                nonce_caller,
                TPMA_SESSION.ENCRYPT,
            )
        )
        self.assertFalse(
            check_response_hmac(
                TPM2_ALG.SHA256,
                b"other",
                digest,
                rphash,
                new_tpm,
                nonce_caller,
                TPMA_SESSION.ENCRYPT,
            )
        )
        self.assertFalse(
            check_response_hmac(
                TPM2_ALG.SHA256, b"key", digest, rphash, nonce_tpm, nonce_caller, 0x40
            )
        )

    def test_new_nonce(self):
        previous = None
        seen = set()
        for _ in range(100):
            nonce = new_nonce(16, previous)
            self.assertEqual(len(nonce), 16)
            self.assertNotEqual(nonce, previous)
            seen.add(nonce)
            previous = nonce
        self.assertEqual(len(seen), 100)


if __name__ == "__main__":
    unittest.main()
