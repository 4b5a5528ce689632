# SPDX-License-Identifier: BSD-2
import hashlib
import unittest

from tpm2_pysession import *
from tpm2_pysession.internal.templates import seal_template, storage_template


class TypesTest(unittest.TestCase):
    def test_TPM2_ALG_parse(self):
        self.assertEqual(TPM2_ALG.parse("sha"), TPM2_ALG.SHA)
        self.assertEqual(TPM2_ALG.parse("sha1"), TPM2_ALG.SHA1)
        self.assertEqual(TPM2_ALG.parse("ShA384"), TPM2_ALG.SHA384)
        self.assertEqual(TPM2_ALG.parse("RSaes"), TPM2_ALG.RSAES)
        self.assertEqual(TPM2_ALG.parse("ECDH"), TPM2_ALG.ECDH)
        self.assertEqual(TPM2_ALG.parse("cfb"), TPM2_ALG.CFB)

        with self.assertRaises(ValueError):
            TPM2_ALG.parse("camellia1024")

        with self.assertRaises(TypeError):
            TPM2_ALG.parse(None)

    def test_TPM2_ALG_to_string(self):
        self.assertEqual(TPM2_ALG.to_string(TPM2_ALG.SHA256), "TPM2_ALG.SHA256")
        # SHA and SHA1 share a value, the shortest name wins
        self.assertEqual(TPM2_ALG.to_string(TPM2_ALG.SHA1), "TPM2_ALG.SHA")
        self.assertEqual(str(TPM2_ALG.AES), "aes")

        with self.assertRaises(ValueError) as e:
            TPM2_ALG.to_string(0x7FFF)
        self.assertEqual(str(e.exception), "Could not match 32767 to class TPM2_ALG")

    def test_TPM2_ECC(self):
        self.assertEqual(TPM2_ECC.parse("nist_p192"), TPM2_ECC.NIST_P192)
        self.assertEqual(TPM2_ECC.parse("256"), TPM2_ECC.NIST_P256)
        self.assertEqual(TPM2_ECC.parse("NIST_P521"), TPM2_ECC.NIST_P521)

    def test_TPM2_CC(self):
        self.assertEqual(TPM2_CC.parse("UnSEAL"), TPM2_CC.Unseal)
        self.assertEqual(TPM2_CC.parse("startauthsession"), TPM2_CC.StartAuthSession)
        self.assertEqual(
            TPM2_CC.to_string(TPM2_CC.HierarchyChangeAuth), "TPM2_CC.HierarchyChangeAuth"
        )
        self.assertTrue(TPM2_CC.contains(TPM2_CC.NV_Write))
        self.assertFalse(TPM2_CC.contains(0x1))

    def test_TPM2_SE_iteration(self):
        self.assertEqual(list(TPM2_SE), [TPM2_SE.HMAC, TPM2_SE.POLICY, TPM2_SE.TRIAL])

    def test_int_marshal(self):
        self.assertEqual(TPM2_ALG.SHA256.marshal(), b"\x00\x0b")
        self.assertEqual(TPM2_RH.OWNER.marshal(), b"\x40\x00\x00\x01")
        self.assertEqual(TPM2_SE.HMAC.marshal(), b"\x00")
        self.assertEqual(TPMA_SESSION(0x21).marshal(), b"\x21")

        alg, consumed = TPM2_ALG.unmarshal(b"\x00\x0c\xff")
        self.assertEqual(alg, TPM2_ALG.SHA384)
        self.assertIsInstance(alg, TPM2_ALG)
        self.assertEqual(consumed, 2)

    def test_int_arithmetic_keeps_class(self):
        v = TPM2_RC.RETRY + 1
        self.assertIsInstance(v, TPM2_RC)
        self.assertIsInstance(TPM2_HT.HMAC_SESSION << TPM2_HR.SHIFT, TPM2_HT)

    def test_TPMA_SESSION(self):
        attrs = TPMA_SESSION.parse("continuesession|decrypt")
        self.assertEqual(attrs, TPMA_SESSION.CONTINUESESSION | TPMA_SESSION.DECRYPT)
        self.assertEqual(str(attrs), "continuesession|decrypt")
        self.assertEqual(TPMA_SESSION.parse(""), 0)

        with self.assertRaises(ValueError):
            TPMA_SESSION.parse("continuesession|bogus")

    def test_TPMA_OBJECT(self):
        attrs = TPMA_OBJECT.parse("fixedtpm|fixedparent|userwithauth|noda")
        self.assertEqual(
            attrs,
            TPMA_OBJECT.FIXEDTPM
            | TPMA_OBJECT.FIXEDPARENT
            | TPMA_OBJECT.USERWITHAUTH
            | TPMA_OBJECT.NODA,
        )
        self.assertEqual(TPMA_OBJECT.parse("sign"), TPMA_OBJECT.SIGN_ENCRYPT)
        self.assertEqual(str(TPMA_OBJECT.SIGN_ENCRYPT), "sign")

        self.assertTrue(TPMA_OBJECT.DEFAULT_SEAL_ATTRS & TPMA_OBJECT.USERWITHAUTH)
        self.assertFalse(TPMA_OBJECT.DEFAULT_SEAL_ATTRS & TPMA_OBJECT.SENSITIVEDATAORIGIN)
        self.assertTrue(TPMA_OBJECT.DEFAULT_STORAGE_ATTRS & TPMA_OBJECT.RESTRICTED)

    def test_TPMA_NV(self):
        attrs = TPMA_NV.parse("ownerwrite|ownerread|authread|authwrite")
        self.assertEqual(
            attrs,
            TPMA_NV.OWNERWRITE | TPMA_NV.OWNERREAD | TPMA_NV.AUTHREAD | TPMA_NV.AUTHWRITE,
        )
        self.assertEqual(TPMA_NV.parse("noda"), TPMA_NV.NO_DA)

        self.assertEqual(str(TPMA_NV.NO_DA | TPM2_NT.COUNTER << 4), "noda|nt=0x1")
        self.assertEqual(TPMA_NV.parse("nt=0x1").nt, TPM2_NT.COUNTER)
        self.assertEqual(TPMA_NV.parse("ppread|nt=1"), TPMA_NV.PPREAD | 0x10)

        with self.assertRaises(ValueError) as e:
            TPMA_NV.parse("madeup=1234")
        self.assertEqual(str(e.exception), "unknown mask type madeup")

        with self.assertRaises(ValueError) as e:
            TPMA_NV.parse("nt=0x10")
        self.assertEqual(
            str(e.exception), "value for nt is to large, got 0x10, max is 0xf"
        )

    def test_TPM2B_simple(self):
        digest = TPM2B_DIGEST("falafel")
        self.assertEqual(bytes(digest), b"falafel")
        self.assertEqual(digest.buffer, b"falafel")
        self.assertEqual(digest.size, 7)
        self.assertEqual(len(digest), 7)
        self.assertEqual(digest[0], ord("f"))
        self.assertEqual(str(digest), b"falafel".hex())
        self.assertEqual(digest, b"falafel")
        self.assertEqual(digest, TPM2B_DIGEST(b"falafel"))
        self.assertEqual(len({digest, TPM2B_DIGEST(b"falafel")}), 1)

        self.assertEqual(digest.marshal(), b"\x00\x07falafel")
        back, consumed = TPM2B_DIGEST.unmarshal(b"\x00\x07falafel\x01\x02")
        self.assertEqual(back, digest)
        self.assertEqual(consumed, 9)

        digest.buffer = b"hummus"
        self.assertEqual(digest.size, 6)

        with self.assertRaises(AttributeError) as e:
            digest.size = 10
        self.assertEqual(str(e.exception), "size is read only")

        with self.assertRaises(AttributeError):
            digest.name = b"x"

        with self.assertRaises(AttributeError):
            TPM2B_DIGEST(name=b"x")

    def test_TPM2B_bytefield(self):
        name = TPM2B_NAME(name=b"\x40\x00\x00\x01")
        self.assertEqual(name.name, b"\x40\x00\x00\x01")
        secret = TPM2B_ENCRYPTED_SECRET(secret=b"salt")
        self.assertEqual(bytes(secret), b"salt")
        self.assertEqual(TPM2B_AUTH(TPM2B_DIGEST(b"pw")), b"pw")

    def test_TPM2B_max_size(self):
        TPM2B_DIGEST(b"x" * 64)
        with self.assertRaises(ValueError):
            TPM2B_DIGEST(b"x" * 65)

        with self.assertRaises(ValueError):
            TPM2B_NONCE(b"x" * 65)

        TPM2B_MAX_NV_BUFFER(b"x" * 1024)

    def test_TPM2B_truncated(self):
        with self.assertRaises(ValueError):
            TPM2B_DIGEST.unmarshal(b"\x00\x05ab")

    def test_TPM_OBJECT_fields(self):
        sens = TPMS_SENSITIVE_CREATE(userAuth="password")
        self.assertIsInstance(sens.userAuth, TPM2B_AUTH)
        self.assertEqual(sens.userAuth, b"password")
        self.assertEqual(sens.data, b"")

        sens.data = b"sealed"
        self.assertIsInstance(sens.data, TPM2B_SENSITIVE_DATA)

        with self.assertRaises(AttributeError):
            sens.madeup = 1

        with self.assertRaises(AttributeError):
            TPMS_SENSITIVE_CREATE(madeup=1)

    def test_TPMS_AUTH_COMMAND(self):
        auth = TPMS_AUTH_COMMAND(
            sessionHandle=TPM2_RH.PW,
            nonce=b"",
            sessionAttributes=TPMA_SESSION.CONTINUESESSION,
            hmac=b"pw",
        )
        b = auth.marshal()
        self.assertEqual(b, b"\x40\x00\x00\x09\x00\x00\x01\x00\x02pw")

        back, consumed = TPMS_AUTH_COMMAND.unmarshal(b + b"\xff")
        self.assertEqual(consumed, len(b))
        self.assertEqual(back, auth)
        self.assertEqual(back.sessionHandle, TPM2_RH.PW)
        self.assertIsInstance(back.sessionAttributes, TPMA_SESSION)

    def test_TPMS_AUTH_RESPONSE(self):
        b = b"\x00\x02ab\x21\x00\x03xyz"
        auth, consumed = TPMS_AUTH_RESPONSE.unmarshal(b)
        self.assertEqual(consumed, len(b))
        self.assertEqual(auth.nonce, b"ab")
        self.assertEqual(auth.sessionAttributes, TPMA_SESSION.CONTINUESESSION | TPMA_SESSION.DECRYPT)
        self.assertEqual(auth.hmac, b"xyz")

    def test_TPMT_SYM_DEF(self):
        self.assertEqual(TPMT_SYM_DEF().marshal(), b"\x00\x10")
        aes = TPMT_SYM_DEF(algorithm=TPM2_ALG.AES, keyBits=128, mode=TPM2_ALG.CFB)
        self.assertEqual(aes.marshal(), b"\x00\x06\x00\x80\x00\x43")
        xor = TPMT_SYM_DEF(algorithm=TPM2_ALG.XOR, keyBits=TPM2_ALG.SHA256)
        self.assertEqual(xor.marshal(), b"\x00\x0a\x00\x0b")

        back, consumed = TPMT_SYM_DEF.unmarshal(b"\x00\x06\x01\x00\x00\x43")
        self.assertEqual(consumed, 6)
        self.assertEqual(back.algorithm, TPM2_ALG.AES)
        self.assertEqual(back.keyBits, 256)
        self.assertEqual(back.mode, TPM2_ALG.CFB)

        back, consumed = TPMT_SYM_DEF.unmarshal(b"\x00\x10\x00\x80")
        self.assertEqual(back.algorithm, TPM2_ALG.NULL)
        self.assertEqual(consumed, 2)

    def test_TPMT_PUBLIC(self):
        for template in (storage_template("rsa2048"), storage_template("ecc256"), seal_template()):
            b = template.marshal()
            back, consumed = TPM2B_PUBLIC.unmarshal(b)
            self.assertEqual(consumed, len(b))
            self.assertEqual(back, template)
            self.assertEqual(back.publicArea.type, template.publicArea.type)

        public = storage_template("rsa2048").publicArea
        self.assertIsInstance(public.parameters, TPMS_RSA_PARMS)
        self.assertIsInstance(public.unique, TPM2B_PUBLIC_KEY_RSA)
        self.assertEqual(public.parameters.keyBits, 2048)

        public = storage_template("ecc256").publicArea
        self.assertIsInstance(public.unique, TPMS_ECC_POINT)
        self.assertEqual(public.parameters.curveID, TPM2_ECC.NIST_P256)

        with self.assertRaises(ValueError):
            storage_template("dsa1024")

    def test_TPMT_PUBLIC_errors(self):
        with self.assertRaises(ValueError):
            TPMT_PUBLIC(type=TPM2_ALG.AES)

        with self.assertRaises(AttributeError):
            TPMT_PUBLIC(type=TPM2_ALG.RSA, madeup=1)

        with self.assertRaises(ValueError):
            TPMT_PUBLIC.unmarshal(b"\x00\x06" + b"\x00" * 20)

    def test_public_name(self):
        public = storage_template("rsa2048")
        name = public.get_name()
        self.assertIsInstance(name, TPM2B_NAME)
        self.assertEqual(len(name), 34)
        expected = b"\x00\x0b" + hashlib.sha256(public.publicArea.marshal()).digest()
        self.assertEqual(bytes(name), expected)

        public = storage_template("rsa2048", nameAlg=TPM2_ALG.SHA384)
        self.assertEqual(len(public.get_name()), 50)
        self.assertEqual(bytes(public.get_name())[0:2], b"\x00\x0c")

    def test_TPM2B_SIZED_OBJECT(self):
        empty, consumed = TPM2B_PUBLIC.unmarshal(b"\x00\x00")
        self.assertEqual(consumed, 2)
        self.assertEqual(empty.publicArea.type, TPM2_ALG.KEYEDHASH)

        sens = TPM2B_SENSITIVE_CREATE(
            sensitive=TPMS_SENSITIVE_CREATE(userAuth=b"pw", data=b"secret")
        )
        self.assertEqual(sens.marshal(), b"\x00\x0c\x00\x02pw\x00\x06secret")

        # one spare byte inside the sized buffer
        inner = seal_template().publicArea.marshal() + b"\x00"
        with self.assertRaises(ValueError) as e:
            TPM2B_PUBLIC.unmarshal(len(inner).to_bytes(2, "big") + inner)
        self.assertIn("does not match", str(e.exception))

    def test_nv_public_name(self):
        nvpub = TPMS_NV_PUBLIC(
            nvIndex=0x01000000,
            nameAlg=TPM2_ALG.SHA256,
            attributes=TPMA_NV.OWNERWRITE | TPMA_NV.OWNERREAD,
            dataSize=32,
        )
        name = nvpub.get_name()
        expected = b"\x00\x0b" + hashlib.sha256(nvpub.marshal()).digest()
        self.assertEqual(bytes(name), expected)
        self.assertEqual(TPM2B_NV_PUBLIC(nvPublic=nvpub).get_name(), name)

        nvpub.attributes = nvpub.attributes | TPMA_NV.WRITTEN
        self.assertNotEqual(nvpub.get_name(), name)

        b = TPM2B_NV_PUBLIC(nvPublic=nvpub).marshal()
        back, consumed = TPM2B_NV_PUBLIC.unmarshal(b)
        self.assertEqual(consumed, len(b))
        self.assertEqual(back.nvPublic.nvIndex, 0x01000000)
        self.assertEqual(back.nvPublic.dataSize, 32)
        self.assertTrue(back.nvPublic.attributes & TPMA_NV.WRITTEN)

    def test_references(self):
        ref = EntityReference(TPM2_RH.OWNER, b"\x40\x00\x00\x01")
        handle, name = ref
        self.assertEqual(handle, TPM2_RH.OWNER)
        self.assertEqual(ref.name, name)
        info = NVIndexInfo(0x01000000, b"\x00\x0b" + b"\x00" * 32)
        self.assertEqual(info.handle, 0x01000000)


if __name__ == "__main__":
    unittest.main()
