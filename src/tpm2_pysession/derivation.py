# SPDX-License-Identifier: BSD-2
"""
Session secret derivation, as defined by the TPM 2.0 library specification, Part 1,
section 19 "Authorizations and Acknowledgments".

Keys and nonces handled here are never logged.
"""
from typing import Iterable, Optional

from .constants import TPMA_SESSION
from .internal.crypto import (
    _check_hmac,
    _get_digest_size,
    _hash,
    _hmac,
    _kdfa,
    random_bytes,
)

SESSION_KEY_LABEL = b"ATH"


def trim_auth(auth_value: bytes) -> bytes:
    """The TPM stores auth values without trailing zero bytes."""
    return bytes(auth_value).rstrip(b"\x00")


def session_key(
    hash_alg: int,
    nonce_tpm: bytes,
    nonce_caller: bytes,
    bind_auth: Optional[bytes] = None,
    salt: Optional[bytes] = None,
) -> bytes:
    """Compute the session key at session start.

    sessionKey = KDFa(hashAlg, bindAuth || salt, "ATH", nonceTPM, nonceCaller, digestBits)

    Args:
        hash_alg (int): The session hash algorithm.
        nonce_tpm (bytes): The first nonce returned by the TPM.
        nonce_caller (bytes): The nonce sent when starting the session.
        bind_auth (bytes): The auth value of the bind entity, None if the session is not bound.
        salt (bytes): The decrypted salt, None if the session is not salted.

    Returns:
        The session key, empty for sessions that are neither bound nor salted.
    """
    if bind_auth is None and salt is None:
        return b""
    key = trim_auth(bind_auth or b"") + (salt or b"")
    bits = _get_digest_size(hash_alg) * 8
    return _kdfa(hash_alg, key, SESSION_KEY_LABEL, nonce_tpm, nonce_caller, bits)


def hmac_key(skey: bytes, auth_value: bytes, include_auth: bool = True) -> bytes:
    """Key of the command and response HMACs, sessionKey || authValue.

    The auth value is left out when the session is bound to the entity it authorizes and
    when the session does not authorize anything.
    """
    if not include_auth:
        return skey
    return skey + trim_auth(auth_value)


def cp_hash(hash_alg: int, command_code: int, names: Iterable[bytes], parameters: bytes) -> bytes:
    """cpHash = H(commandCode || names || parameters)"""
    return _hash(
        hash_alg,
        int(command_code).to_bytes(4, "big"),
        *[bytes(n) for n in names],
        parameters,
    )


def rp_hash(hash_alg: int, response_code: int, command_code: int, parameters: bytes) -> bytes:
    """rpHash = H(responseCode || commandCode || parameters)"""
    return _hash(
        hash_alg,
        int(response_code).to_bytes(4, "big"),
        int(command_code).to_bytes(4, "big"),
        parameters,
    )


def command_hmac(
    hash_alg: int,
    key: bytes,
    cphash: bytes,
    nonce_caller: bytes,
    nonce_tpm: bytes,
    attributes: int,
    nonce_decrypt: bytes = b"",
    nonce_encrypt: bytes = b"",
) -> bytes:
    """HMAC(key, cpHash || nonceCaller || nonceTPM || [nonceTPMdecrypt] || [nonceTPMencrypt] || attributes)

    The decrypt and encrypt nonces belong to other sessions of the same command and are
    only given for the first session.
    """
    return _hmac(
        hash_alg,
        key,
        cphash,
        nonce_caller,
        nonce_tpm,
        nonce_decrypt,
        nonce_encrypt,
        TPMA_SESSION(attributes).marshal(),
    )


def response_hmac(
    hash_alg: int,
    key: bytes,
    rphash: bytes,
    nonce_tpm: bytes,
    nonce_caller: bytes,
    attributes: int,
) -> bytes:
    """HMAC(key, rpHash || nonceTPM || nonceCaller || attributes)"""
    return _hmac(
        hash_alg, key, rphash, nonce_tpm, nonce_caller, TPMA_SESSION(attributes).marshal()
    )


def check_response_hmac(
    hash_alg: int,
    key: bytes,
    expected: bytes,
    rphash: bytes,
    nonce_tpm: bytes,
    nonce_caller: bytes,
    attributes: int,
) -> bool:
    """Verify a response HMAC in constant time."""
    return _check_hmac(
        hash_alg,
        key,
        bytes(expected),
        rphash,
        nonce_tpm,
        nonce_caller,
        TPMA_SESSION(attributes).marshal(),
    )


def new_nonce(size: int, previous: Optional[bytes] = None) -> bytes:
    """A fresh random nonce, never equal to the previous one."""
    while True:
        nonce = random_bytes(size)
        if nonce != previous:
            return nonce
