# SPDX-License-Identifier: BSD-2
"""
Parameter encryption, TPM 2.0 library specification Part 1, section 21 "Session-based
encryption", AES in CFB mode.

Only the contents of the first parameter are transformed, and only when that parameter
is a sized buffer. The size prefix stays in the clear.
"""
from typing import Sequence, Tuple

from .exceptions import ConfigurationError
from .internal.crypto import _decrypt, _encrypt, _kdfa
from .internal.utils import _unpack_sized
from .log import session_loggers

logger = session_loggers["crypto"]

CFB_LABEL = b"CFB"
_IV_BITS = 128


def cfb_key_iv(
    hash_alg: int, session_value: bytes, nonce_newer: bytes, nonce_older: bytes, key_bits: int
) -> Tuple[bytes, bytes]:
    """Derive the AES key and IV of one parameter.

    KDFa(hashAlg, sessionKey || authValue, "CFB", nonceNewer, nonceOlder, keyBits + 128)

    For commands nonceNewer is the caller nonce and nonceOlder the TPM nonce, for
    responses it is the other way around.
    """
    bits = key_bits + _IV_BITS
    material = _kdfa(hash_alg, session_value, CFB_LABEL, nonce_newer, nonce_older, bits)
    klen = key_bits // 8
    return material[:klen], material[klen:]


def _check_size(data: bytes, max_size: int):
    if len(data) > max_size:
        raise ConfigurationError(
            f"parameter of {len(data)} bytes exceeds the maximum of {max_size} bytes for encryption"
        )


def encrypt(
    hash_alg: int,
    session_value: bytes,
    nonce_newer: bytes,
    nonce_older: bytes,
    key_bits: int,
    plaintext: bytes,
    max_size: int,
) -> bytes:
    """Encrypt the contents of a parameter.

    Raises:
        ConfigurationError: if the plaintext is larger than max_size.
    """
    _check_size(plaintext, max_size)
    logger.debug(f"encrypting a {len(plaintext)} byte parameter with AES-{key_bits}-CFB")
    key, iv = cfb_key_iv(hash_alg, session_value, nonce_newer, nonce_older, key_bits)
    return _encrypt(key, iv, bytes(plaintext))


def decrypt(
    hash_alg: int,
    session_value: bytes,
    nonce_newer: bytes,
    nonce_older: bytes,
    key_bits: int,
    ciphertext: bytes,
    max_size: int,
) -> bytes:
    """Decrypt the contents of a parameter.

    Raises:
        ConfigurationError: if the ciphertext is larger than max_size.
    """
    _check_size(ciphertext, max_size)
    logger.debug(f"decrypting a {len(ciphertext)} byte parameter with AES-{key_bits}-CFB")
    key, iv = cfb_key_iv(hash_alg, session_value, nonce_newer, nonce_older, key_bits)
    return _decrypt(key, iv, bytes(ciphertext))


def split_first(parameters: bytes) -> Tuple[bytes, bytes]:
    """Split marshaled parameters into the contents of the first sized buffer and the rest.

    Raises:
        ValueError: if the parameters do not start with a complete sized buffer.
    """
    contents, offset = _unpack_sized(parameters, 0)
    return contents, bytes(parameters[offset:])


def join_first(contents: bytes, rest: bytes) -> bytes:
    return len(contents).to_bytes(2, "big") + contents + rest


def transform_first(parameters: bytes, func) -> bytes:
    """Replace the contents of the first sized parameter with func(contents).

    The parameters are left untouched if func raises.
    """
    contents, rest = split_first(parameters)
    transformed = func(contents)
    if len(transformed) != len(contents):
        raise ValueError("parameter transformation must preserve the size")
    return join_first(transformed, rest)


def check_marked(marked: Sequence[int]) -> int:
    """Validate the parameters marked for encryption and return the marked index.

    Only the first parameter of a command or response can be encrypted.

    Returns:
        The index of the marked parameter, or -1 if none is marked.

    Raises:
        ConfigurationError: if more than one parameter is marked or the marked one is
            not the first.
    """
    marked = list(marked)
    if not marked:
        return -1
    if len(marked) > 1:
        raise ConfigurationError(
            f"only one parameter can be encrypted, got {len(marked)} marked parameters"
        )
    if marked[0] != 0:
        raise ConfigurationError(
            f"only the first parameter can be encrypted, got parameter {marked[0]}"
        )
    return 0
