# SPDX-License-Identifier: BSD-2
import unittest

from tpm2_pysession import *
from tpm2_pysession.descriptor import hmac
from tpm2_pysession.internal.templates import seal_template, storage_template
from tpm2_pysession.simulator import MAX_SYM_DATA


class DescriptorTest(unittest.TestCase):
    def test_defaults(self):
        d = unbound(b"owner-secret")
        self.assertIsInstance(d, HMACSession)
        self.assertEqual(d.hash_alg, TPM2_ALG.SHA256)
        self.assertEqual(d.nonce_size, 16)
        self.assertEqual(d.encryption, AESCFB(128, Direction.INOUT))
        self.assertEqual(d.auth_value, b"owner-secret")
        self.assertFalse(d.is_bound)
        self.assertFalse(d.is_salted)

    def test_password(self):
        d = password("mysecret")
        self.assertIsInstance(d, PasswordSession)
        self.assertEqual(d.auth_value, b"mysecret")
        self.assertEqual(password(None).auth_value, b"")

        with self.assertRaises(ConfigurationError):
            password(1234)

    def test_hmac_auth(self):
        d = hmac_auth("mypassword")
        self.assertIsNone(d.encryption)
        self.assertEqual(d.auth_value, b"mypassword")

    def test_immutable(self):
        d = unbound(b"x")
        with self.assertRaises(AttributeError):
            d.nonce_size = 32
        self.assertEqual(d, unbound(b"x"))

    def test_hash_algs(self):
        for alg in (TPM2_ALG.SHA256, TPM2_ALG.SHA384, TPM2_ALG.SHA512):
            self.assertEqual(hmac(hash_alg=alg).hash_alg, alg)

        with self.assertRaises(ConfigurationError):
            hmac(hash_alg=TPM2_ALG.SHA1)

        with self.assertRaises(ConfigurationError):
            hmac(hash_alg=TPM2_ALG.AES)

        d = hmac(hash_alg=TPM2_ALG.SHA1, supported_hash_algs=(TPM2_ALG.SHA1,))
        self.assertEqual(d.hash_alg, TPM2_ALG.SHA1)

        with self.assertRaises(ConfigurationError):
            hmac(hash_alg=TPM2_ALG.SHA512, supported_hash_algs=(TPM2_ALG.SHA256,))

    def test_nonce_size(self):
        self.assertEqual(hmac(nonce_size=32).nonce_size, 32)
        self.assertEqual(hmac(hash_alg=TPM2_ALG.SHA512, nonce_size=64).nonce_size, 64)

        with self.assertRaises(ConfigurationError):
            hmac(nonce_size=15)

        with self.assertRaises(ConfigurationError):
            hmac(nonce_size=33)

        with self.assertRaises(ConfigurationError):
            hmac(nonce_size="16")

    def test_config_defaults(self):
        config = SessionConfig.default(nonce_size=32, hash_alg=TPM2_ALG.SHA384)
        d = unbound(b"x", config=config)
        self.assertEqual(d.hash_alg, TPM2_ALG.SHA384)
        self.assertEqual(d.nonce_size, 32)
        self.assertEqual(hmac_auth(config=config).hash_alg, TPM2_ALG.SHA384)
        self.assertEqual(hmac(nonce_size=16, config=config).nonce_size, 16)
        self.assertEqual(unbound(b"x").hash_alg, TPM2_ALG.SHA256)

        restricted = SessionConfig.default(session_hash_algs=(TPM2_ALG.SHA256,))
        with self.assertRaises(ConfigurationError):
            hmac(hash_alg=TPM2_ALG.SHA384, config=restricted)

        with self.assertRaises(ConfigurationError):
            build_descriptor(config=SessionConfig.default(nonce_size=64))

    def test_config_limits(self):
        config = SessionConfig.default()
        self.assertEqual(config.max_parameter_size, TPM2_MAX.DIGEST_BUFFER)
        self.assertEqual(config.max_sym_data, TPM2_MAX.SYM_DATA)
        self.assertEqual(config.max_sym_data, MAX_SYM_DATA)
        self.assertEqual(PyTCTI().max_size, TPM2_MAX.COMMAND_SIZE)

    def test_encryption(self):
        for bits in (128, 192, 256):
            d = hmac(encryption=AESCFB(bits))
            self.assertEqual(d.encryption.key_bits, bits)

        with self.assertRaises(ConfigurationError):
            hmac(encryption=AESCFB(64))

        with self.assertRaises(ConfigurationError):
            hmac(encryption=AESCFB(128, 0))

        with self.assertRaises(ConfigurationError):
            hmac(encryption=(128, Direction.IN))

    def test_direction(self):
        self.assertTrue(AESCFB(direction=Direction.IN).command)
        self.assertFalse(AESCFB(direction=Direction.IN).response)
        self.assertFalse(AESCFB(direction=Direction.OUT).command)
        self.assertTrue(AESCFB(direction=Direction.OUT).response)
        self.assertTrue(AESCFB().command)
        self.assertTrue(AESCFB().response)
        self.assertEqual(Direction.IN, TPMA_SESSION.DECRYPT)
        self.assertEqual(Direction.OUT, TPMA_SESSION.ENCRYPT)

    def test_bound(self):
        d = bound(TPM2_RH.OWNER, b"\x40\x00\x00\x01", "bindpassword", "mysecret")
        self.assertTrue(d.is_bound)
        km = d.key_material
        self.assertEqual(km.bind_handle, TPM2_RH.OWNER)
        self.assertEqual(km.bind_name, b"\x40\x00\x00\x01")
        self.assertEqual(km.bind_auth, b"bindpassword")
        self.assertEqual(d.auth_value, b"mysecret")

    def test_salted(self):
        public = storage_template("rsa2048")
        d = salted(0x80000000, public)
        self.assertTrue(d.is_salted)
        self.assertIsInstance(d.key_material.salt_key_public, TPMT_PUBLIC)
        self.assertEqual(d.key_material.salt_key_public, public.publicArea)

        d = salted(0x80000000, storage_template("ecc256").publicArea, "mysecret")
        self.assertEqual(d.auth_value, b"mysecret")

        with self.assertRaises(ConfigurationError):
            salted(0x80000000, seal_template())

        with self.assertRaises(ConfigurationError):
            salted(0x80000000, b"not a public area")

    def test_unknown_key_material(self):
        with self.assertRaises(ConfigurationError):
            hmac(key_material=b"secret")

    def test_build_descriptor(self):
        d = build_descriptor("mysecret")
        self.assertIsInstance(d.key_material, PlainAuth)
        self.assertEqual(d.encryption, AESCFB())

        owner = EntityReference(TPM2_RH.OWNER, b"\x40\x00\x00\x01")
        d = build_descriptor(bind=owner, bind_auth="bindpassword", encryption=None)
        self.assertIsInstance(d.key_material, Bound)
        self.assertIsNone(d.encryption)

        d = build_descriptor(salt=0x80000000, salt_public=storage_template())
        self.assertIsInstance(d.key_material, Salted)

        with self.assertRaises(ConfigurationError):
            build_descriptor(
                bind=owner, salt=0x80000000, salt_public=storage_template()
            )

        with self.assertRaises(ConfigurationError):
            build_descriptor(salt=0x80000000)

        with self.assertRaises(ConfigurationError):
            build_descriptor(hash_alg=TPM2_ALG.SHA256, nonce_size=8)


if __name__ == "__main__":
    unittest.main()
