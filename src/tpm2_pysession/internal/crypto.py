# SPDX-License-Identifier: BSD-2

from ..constants import TPM2_ALG, TPM2_ECC
from cryptography.hazmat.primitives.asymmetric import rsa, ec, padding
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.hmac import HMAC
from cryptography.hazmat.primitives.kdf.kbkdf import CounterLocation, KBKDFHMAC, Mode
from cryptography.hazmat.primitives.kdf.concatkdf import ConcatKDFHash
from cryptography.hazmat.primitives.ciphers.algorithms import AES
from cryptography.hazmat.primitives.ciphers import modes, Cipher
from cryptography.hazmat.backends import default_backend
from cryptography.exceptions import InvalidSignature
from typing import Tuple
import secrets

_curvetable = (
    (TPM2_ECC.NIST_P192, ec.SECP192R1),
    (TPM2_ECC.NIST_P224, ec.SECP224R1),
    (TPM2_ECC.NIST_P256, ec.SECP256R1),
    (TPM2_ECC.NIST_P384, ec.SECP384R1),
    (TPM2_ECC.NIST_P521, ec.SECP521R1),
)

_digesttable = (
    (TPM2_ALG.SHA1, hashes.SHA1),
    (TPM2_ALG.SHA256, hashes.SHA256),
    (TPM2_ALG.SHA384, hashes.SHA384),
    (TPM2_ALG.SHA512, hashes.SHA512),
)

# label used for the secret of salted sessions, including the terminating NUL
SALT_LABEL = b"SECRET\x00"


def _get_curveid(curve):
    for (algid, c) in _curvetable:
        if isinstance(curve, c):
            return algid
    return None


def _get_curve(curveid):
    for (algid, c) in _curvetable:
        if algid == curveid:
            return c
    return None


def _get_digest(digestid):
    for (algid, d) in _digesttable:
        if algid == digestid:
            return d
    return None


def _get_digest_size(alg):
    dt = _get_digest(alg)
    if dt is None:
        raise ValueError(f"unsupported digest algorithm: {alg}")

    return dt.digest_size


def random_bytes(size: int) -> bytes:
    """Returns size bytes from the operating system CSPRNG."""
    if size < 0:
        raise ValueError(f"expected a positive size, got {size}")
    return secrets.token_bytes(size)


def _hash(hashAlg, *data) -> bytes:
    dt = _get_digest(hashAlg)
    if dt is None:
        raise ValueError(f"unsupported digest algorithm: {hashAlg}")
    d = hashes.Hash(dt(), backend=default_backend())
    for b in data:
        d.update(b)
    return d.finalize()


def _hmac(hashAlg, key: bytes, *data) -> bytes:
    dt = _get_digest(hashAlg)
    if dt is None:
        raise ValueError(f"unsupported digest algorithm: {hashAlg}")
    h = HMAC(key, dt(), backend=default_backend())
    for b in data:
        h.update(b)
    return h.finalize()


def _check_hmac(hashAlg, key: bytes, expected: bytes, *data) -> bool:
    dt = _get_digest(hashAlg)
    if dt is None:
        raise ValueError(f"unsupported digest algorithm: {hashAlg}")
    h = HMAC(key, dt(), backend=default_backend())
    for b in data:
        h.update(b)
    try:
        h.verify(expected)
    except InvalidSignature:
        return False
    return True


def _kdfa(hashAlg, key, label, contextU, contextV, bits):
    halg = _get_digest(hashAlg)
    if halg is None:
        raise ValueError(f"unsupported digest algorithm: {hashAlg}")
    if bits % 8:
        raise ValueError(f"bad key length {bits}, not a multiple of 8")
    klen = int(bits / 8)
    context = contextU + contextV
    kdf = KBKDFHMAC(
        algorithm=halg(),
        mode=Mode.CounterMode,
        length=klen,
        rlen=4,
        llen=4,
        location=CounterLocation.BeforeFixed,
        label=label,
        context=context,
        fixed=None,
        backend=default_backend(),
    )
    return kdf.derive(key)


def kdfe(hashAlg, z, use, partyuinfo, partyvinfo, bits):
    halg = _get_digest(hashAlg)
    if halg is None:
        raise ValueError(f"unsupported digest algorithm: {hashAlg}")
    if bits % 8:
        raise ValueError(f"bad key length {bits}, not a multiple of 8")
    klen = int(bits / 8)
    otherinfo = use + partyuinfo + partyvinfo
    kdf = ConcatKDFHash(
        algorithm=halg(), length=klen, otherinfo=otherinfo, backend=default_backend()
    )
    return kdf.derive(z)


def _encrypt(key: bytes, iv: bytes, data: bytes) -> bytes:
    ciph = Cipher(AES(key), modes.CFB(iv), backend=default_backend())
    encr = ciph.encryptor()
    encdata = encr.update(data) + encr.finalize()
    return encdata


def _decrypt(key: bytes, iv: bytes, data: bytes) -> bytes:
    ciph = Cipher(AES(key), modes.CFB(iv), backend=default_backend())
    decr = ciph.decryptor()
    plaintextdata = decr.update(data) + decr.finalize()
    return plaintextdata


def public_to_key(obj):
    """Convert a TPMT_PUBLIC of an asymmetric key into a cryptography public key."""
    key = None
    if obj.type == TPM2_ALG.RSA:
        n = int.from_bytes(bytes(obj.unique), byteorder="big")
        e = obj.parameters.exponent
        if e == 0:
            e = 65537
        nums = rsa.RSAPublicNumbers(e, n)
        key = nums.public_key(backend=default_backend())
    elif obj.type == TPM2_ALG.ECC:
        curve = _get_curve(obj.parameters.curveID)
        if curve is None:
            raise ValueError(f"unsupported curve: {obj.parameters.curveID}")
        x = int.from_bytes(bytes(obj.unique.x), byteorder="big")
        y = int.from_bytes(bytes(obj.unique.y), byteorder="big")
        nums = ec.EllipticCurvePublicNumbers(x, y, curve())
        key = nums.public_key(backend=default_backend())
    else:
        raise ValueError(f"unsupported key type: {obj.type}")

    return key


def _getname(obj):
    dt = _get_digest(obj.nameAlg)
    if dt is None:
        raise ValueError(f"unsupported digest algorithm: {obj.nameAlg}")
    d = hashes.Hash(dt(), backend=default_backend())
    mb = obj.marshal()
    d.update(mb)
    b = d.finalize()
    db = obj.nameAlg.to_bytes(length=2, byteorder="big")
    name = db + b
    return name


def _generate_rsa_seed(
    key: rsa.RSAPublicKey, hashAlg: int, label: bytes
) -> Tuple[bytes, bytes]:
    halg = _get_digest(hashAlg)
    if halg is None:
        raise ValueError(f"unsupported digest algorithm {hashAlg}")
    seed = secrets.token_bytes(halg.digest_size)
    mgf = padding.MGF1(halg())
    padd = padding.OAEP(mgf, halg(), label)
    enc_seed = key.encrypt(seed, padd)
    return (seed, enc_seed)


def _ecc_point_bytes(x: int, y: int, plength: int) -> bytes:
    # TPMS_ECC_POINT, two sized coordinates
    exbytes = x.to_bytes(plength, "big")
    eybytes = y.to_bytes(plength, "big")
    return (
        len(exbytes).to_bytes(length=2, byteorder="big")
        + exbytes
        + len(eybytes).to_bytes(length=2, byteorder="big")
        + eybytes
    )


def _generate_ecc_seed(
    key: ec.EllipticCurvePublicKey, hashAlg: int, label: bytes
) -> Tuple[bytes, bytes]:
    halg = _get_digest(hashAlg)
    if halg is None:
        raise ValueError(f"unsupported digest algorithm {hashAlg}")
    ekey = ec.generate_private_key(key.curve, default_backend())
    epubnum = ekey.public_key().public_numbers()
    plength = (key.curve.key_size + 7) // 8
    secret = _ecc_point_bytes(epubnum.x, epubnum.y, plength)
    shared_key = ekey.exchange(ec.ECDH(), key)
    pubnum = key.public_numbers()
    exbytes = epubnum.x.to_bytes(plength, "big")
    xbytes = pubnum.x.to_bytes(plength, "big")
    seed = kdfe(hashAlg, shared_key, label, exbytes, xbytes, halg.digest_size * 8)
    return (seed, secret)


def _generate_seed(public, label: bytes) -> Tuple[bytes, bytes]:
    """Generate a salt and its encryption to the key described by public.

    Returns:
        A tuple of (salt, encrypted salt).
    """
    key = public_to_key(public)
    if public.type == TPM2_ALG.RSA:
        return _generate_rsa_seed(key, public.nameAlg, label)
    elif public.type == TPM2_ALG.ECC:
        return _generate_ecc_seed(key, public.nameAlg, label)
    else:
        raise ValueError(f"unsupported seed algorithm {public.type}")


def _rsa_secret_to_seed(key, hashAlg: int, label: bytes, outsymseed: bytes):
    halg = _get_digest(hashAlg)
    if halg is None:
        raise ValueError(f"unsupported digest algorithm {hashAlg}")
    mgf = padding.MGF1(halg())
    padd = padding.OAEP(mgf, halg(), label)
    seed = key.decrypt(bytes(outsymseed), padd)
    return seed


def _ecc_secret_to_seed(
    key: ec.EllipticCurvePrivateKey, hashAlg: int, label: bytes, outsymseed: bytes
) -> bytes:
    halg = _get_digest(hashAlg)
    if halg is None:
        raise ValueError(f"unsupported digest algorithm {hashAlg}")

    # unmarshal of TPMS_ECC_POINT, types can't be used here due to cyclic deps
    xlen = int.from_bytes(outsymseed[0:2], byteorder="big")
    ylen = int.from_bytes(outsymseed[xlen + 2 : xlen + 4], byteorder="big")
    if xlen + ylen != len(outsymseed) - 4:
        raise ValueError(
            f"Expected TPMS_ECC_POINT to have two points of len {xlen + ylen}, got: {len(outsymseed)}"
        )

    exbytes = outsymseed[2 : 2 + xlen]
    eybytes = outsymseed[xlen + 4 : xlen + 4 + ylen]

    x = int.from_bytes(exbytes, byteorder="big")
    y = int.from_bytes(eybytes, byteorder="big")
    nums = ec.EllipticCurvePublicNumbers(x, y, key.curve)
    peer_public_key = nums.public_key(backend=default_backend())

    shared_key = key.exchange(ec.ECDH(), peer_public_key)

    plength = (key.curve.key_size + 7) // 8
    pubnum = key.public_key().public_numbers()
    xbytes = pubnum.x.to_bytes(plength, "big")
    seed = kdfe(hashAlg, shared_key, label, exbytes, xbytes, halg.digest_size * 8)
    return seed


def _secret_to_seed(key, hashAlg: int, label: bytes, outsymseed: bytes) -> bytes:
    """Recover a salt from its encryption, the TPM side of :func:`_generate_seed`."""
    if isinstance(key, rsa.RSAPrivateKey):
        return _rsa_secret_to_seed(key, hashAlg, label, outsymseed)
    elif isinstance(key, ec.EllipticCurvePrivateKey):
        return _ecc_secret_to_seed(key, hashAlg, label, outsymseed)
    else:
        raise ValueError(f"unsupported seed key type {key.__class__.__name__}")
