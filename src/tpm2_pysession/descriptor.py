# SPDX-License-Identifier: BSD-2
"""
Session descriptors describe how a session authorizes and encrypts a command exchange.

A descriptor is an immutable value, either a :class:`PasswordSession` or an
:class:`HMACSession`. The key material of an HMAC session is one of :class:`PlainAuth`,
:class:`Bound` or :class:`Salted`. Building a descriptor never talks to the TPM.

Example:
    >>> d = unbound(b"owner-secret")
    >>> d.hash_alg == TPM2_ALG.SHA256, d.nonce_size
    (True, 16)
"""
from typing import NamedTuple, Optional, Sequence, Tuple, Union

from .constants import TPM2_ALG, TPMA_FRIENDLY_INTLIST, TPMA_SESSION
from .exceptions import ConfigurationError
from .internal.crypto import _get_digest
from .internal.utils import _to_bytes
from .types import TPMT_PUBLIC, TPM2B_PUBLIC, EntityReference

DEFAULT_HASH_ALG = TPM2_ALG.SHA256
DEFAULT_NONCE_SIZE = 16
MIN_NONCE_SIZE = 16
SESSION_HASH_ALGS = (TPM2_ALG.SHA256, TPM2_ALG.SHA384, TPM2_ALG.SHA512)
AES_KEY_BITS = (128, 192, 256)


class Direction(TPMA_FRIENDLY_INTLIST):
    """Which parameters a session encrypts.

    The values are the session attributes sent with the command, IN sets DECRYPT
    (the TPM decrypts the command parameter) and OUT sets ENCRYPT (the TPM encrypts
    the response parameter).
    """

    _size = 1
    IN = TPMA_SESSION.DECRYPT
    OUT = TPMA_SESSION.ENCRYPT
    INOUT = TPMA_SESSION.DECRYPT | TPMA_SESSION.ENCRYPT


class AESCFB(NamedTuple):
    """Parameter encryption with AES in CFB mode."""

    key_bits: int = 128
    direction: Direction = Direction.INOUT

    @property
    def command(self) -> bool:
        return bool(self.direction & Direction.IN)

    @property
    def response(self) -> bool:
        return bool(self.direction & Direction.OUT)


class PlainAuth(NamedTuple):
    """Unbound and unsalted, the secret is the auth value of the authorized entity."""

    auth_value: bytes = b""


class Bound(NamedTuple):
    """Bound to an entity, the session key derives from the auth value of that entity."""

    bind_handle: int
    bind_name: bytes
    bind_auth: bytes = b""
    auth_value: bytes = b""


class Salted(NamedTuple):
    """Salted with a random value encrypted to an asymmetric key loaded in the TPM."""

    salt_key_handle: int
    salt_key_public: TPMT_PUBLIC
    auth_value: bytes = b""


KeyMaterial = Union[PlainAuth, Bound, Salted]


class PasswordSession(NamedTuple):
    """Authorization by sending the auth value in the clear."""

    value: bytes = b""

    @property
    def auth_value(self) -> bytes:
        return self.value


class HMACSession(NamedTuple):
    """An HMAC session, optionally encrypting the first parameter."""

    hash_alg: int
    nonce_size: int
    key_material: KeyMaterial
    encryption: Optional[AESCFB] = None

    @property
    def auth_value(self) -> bytes:
        return self.key_material.auth_value

    @property
    def is_bound(self) -> bool:
        return isinstance(self.key_material, Bound)

    @property
    def is_salted(self) -> bool:
        return isinstance(self.key_material, Salted)


SessionDescriptor = Union[PasswordSession, HMACSession]


def _check_encryption(encryption: Optional[AESCFB]) -> Optional[AESCFB]:
    if encryption is None:
        return None
    if not isinstance(encryption, AESCFB):
        raise ConfigurationError(
            f"expected encryption to be AESCFB or None, got {encryption.__class__.__name__}"
        )
    if encryption.key_bits not in AES_KEY_BITS:
        raise ConfigurationError(
            f"unsupported AES key size {encryption.key_bits}, expected one of {AES_KEY_BITS}"
        )
    if encryption.direction not in (Direction.IN, Direction.OUT, Direction.INOUT):
        raise ConfigurationError(f"invalid encryption direction {encryption.direction}")
    return AESCFB(encryption.key_bits, Direction(encryption.direction))


def _secret(value, name: str) -> bytes:
    try:
        return _to_bytes(value, name)
    except TypeError as e:
        raise ConfigurationError(str(e)) from e


def _check_key_material(km: KeyMaterial) -> KeyMaterial:
    if isinstance(km, PlainAuth):
        return PlainAuth(_secret(km.auth_value, "auth_value"))
    if isinstance(km, Bound):
        return Bound(
            int(km.bind_handle),
            _secret(km.bind_name, "bind_name"),
            _secret(km.bind_auth, "bind_auth"),
            _secret(km.auth_value, "auth_value"),
        )
    if isinstance(km, Salted):
        public = km.salt_key_public
        if isinstance(public, TPM2B_PUBLIC):
            public = public.publicArea
        if not isinstance(public, TPMT_PUBLIC):
            raise ConfigurationError(
                f"expected salt key public to be TPMT_PUBLIC, got {public.__class__.__name__}"
            )
        if public.type not in (TPM2_ALG.RSA, TPM2_ALG.ECC):
            raise ConfigurationError(
                f"salt key must be an RSA or ECC key, got {public.type}"
            )
        if _get_digest(public.nameAlg) is None:
            raise ConfigurationError(
                f"unsupported salt key name algorithm {public.nameAlg}"
            )
        return Salted(int(km.salt_key_handle), public, _secret(km.auth_value, "auth_value"))
    raise ConfigurationError(
        f"unknown key material {km.__class__.__name__}, expected PlainAuth, Bound or Salted"
    )


def _config_defaults(config) -> Tuple[int, int, Sequence[int]]:
    if config is None:
        return DEFAULT_HASH_ALG, DEFAULT_NONCE_SIZE, SESSION_HASH_ALGS
    return config.hash_alg, config.nonce_size, config.session_hash_algs


def hmac(
    hash_alg: Optional[int] = None,
    nonce_size: Optional[int] = None,
    key_material: Optional[KeyMaterial] = None,
    encryption: Optional[AESCFB] = None,
    supported_hash_algs: Optional[Sequence[int]] = None,
    config=None,
) -> HMACSession:
    """Build and validate an HMAC session descriptor.

    Args:
        hash_alg (int): The session hash algorithm, defaults to the one of the
            configuration or SHA256.
        nonce_size (int): Size of the caller nonces in bytes, defaults to the one of
            the configuration or 16.
        key_material (KeyMaterial): PlainAuth, Bound or Salted, defaults to PlainAuth(b"").
        encryption (AESCFB): Parameter encryption, defaults to None.
        supported_hash_algs (sequence of int): Hash algorithms the TPM accepts for
            sessions, defaults to those of the configuration or SHA256, SHA384 and SHA512.
        config (SessionConfig): Supplies the defaults above.

    Returns:
        An HMACSession.

    Raises:
        ConfigurationError: for an unsupported hash algorithm, nonce size or AES key size.
    """
    default_hash, default_nonce, default_algs = _config_defaults(config)
    if hash_alg is None:
        hash_alg = default_hash
    if nonce_size is None:
        nonce_size = default_nonce
    if supported_hash_algs is None:
        supported_hash_algs = default_algs
    if hash_alg not in supported_hash_algs or _get_digest(hash_alg) is None:
        raise ConfigurationError(f"hash algorithm {hash_alg} is not supported for sessions")
    hash_alg = TPM2_ALG(hash_alg)
    digest_size = _get_digest(hash_alg).digest_size
    if not isinstance(nonce_size, int) or not (
        MIN_NONCE_SIZE <= nonce_size <= digest_size
    ):
        raise ConfigurationError(
            f"nonce size must be between {MIN_NONCE_SIZE} and {digest_size} for {hash_alg}, got {nonce_size}"
        )
    if key_material is None:
        key_material = PlainAuth()
    return HMACSession(
        hash_alg, nonce_size, _check_key_material(key_material), _check_encryption(encryption)
    )


def password(value: Union[bytes, str, None] = b"") -> PasswordSession:
    """Build a password descriptor, the value is sent in the clear."""
    return PasswordSession(_secret(value, "password"))


def build_descriptor(
    auth_value: Union[bytes, str, None] = b"",
    bind: Optional[EntityReference] = None,
    bind_auth: Union[bytes, str, None] = b"",
    salt: Optional[int] = None,
    salt_public: Union[TPMT_PUBLIC, TPM2B_PUBLIC, None] = None,
    hash_alg: Optional[int] = None,
    nonce_size: Optional[int] = None,
    encryption: Optional[AESCFB] = AESCFB(),
    supported_hash_algs: Optional[Sequence[int]] = None,
    config=None,
) -> HMACSession:
    """Build an HMAC session descriptor from an authorization intent.

    Args:
        auth_value (bytes, str): The auth value of the entity the session authorizes.
        bind (EntityReference): The entity to bind to, its handle and name.
        bind_auth (bytes, str): The auth value of the bind entity.
        salt (int): The handle of the key the salt is encrypted to.
        salt_public (TPMT_PUBLIC, TPM2B_PUBLIC): The public area of the salt key.
        hash_alg (int): The session hash algorithm.
        nonce_size (int): The caller nonce size.
        encryption (AESCFB): Parameter encryption, None for none. Defaults to AES-128-CFB
            both ways.
        supported_hash_algs (sequence of int): Hash algorithms the TPM accepts for sessions.
        config (SessionConfig): Supplies the defaults of hash_alg, nonce_size and
            supported_hash_algs.

    Returns:
        An HMACSession.

    Raises:
        ConfigurationError: if both bind and salt are given or any parameter is invalid.
    """
    if bind is not None and salt is not None:
        raise ConfigurationError("a session is either bound or salted, not both")
    if salt is not None:
        if salt_public is None:
            raise ConfigurationError("a salted session needs the public area of the salt key")
        km = Salted(salt, salt_public, auth_value)
    elif bind is not None:
        handle, name = bind
        km = Bound(handle, name, bind_auth, auth_value)
    else:
        km = PlainAuth(auth_value)
    return hmac(
        hash_alg=hash_alg,
        nonce_size=nonce_size,
        key_material=km,
        encryption=encryption,
        supported_hash_algs=supported_hash_algs,
        config=config,
    )


def unbound(
    auth_value: Union[bytes, str, None] = b"",
    encryption: Optional[AESCFB] = AESCFB(),
    config=None,
) -> HMACSession:
    """An unbound, unsalted HMAC session, SHA256 and 16 byte nonces unless configured."""
    return hmac(key_material=PlainAuth(auth_value), encryption=encryption, config=config)


def bound(
    bind_handle: int,
    bind_name: bytes,
    bind_auth: Union[bytes, str, None] = b"",
    auth_value: Union[bytes, str, None] = b"",
    encryption: Optional[AESCFB] = AESCFB(),
    config=None,
) -> HMACSession:
    """An HMAC session bound to an entity, SHA256 and 16 byte nonces unless configured."""
    return hmac(
        key_material=Bound(bind_handle, bind_name, bind_auth, auth_value),
        encryption=encryption,
        config=config,
    )


def salted(
    salt_key_handle: int,
    salt_key_public: Union[TPMT_PUBLIC, TPM2B_PUBLIC],
    auth_value: Union[bytes, str, None] = b"",
    encryption: Optional[AESCFB] = AESCFB(),
    config=None,
) -> HMACSession:
    """An HMAC session salted to an RSA or ECC key, SHA256 and 16 byte nonces unless
    configured."""
    return hmac(
        key_material=Salted(salt_key_handle, salt_key_public, auth_value),
        encryption=encryption,
        config=config,
    )


def hmac_auth(auth_value: Union[bytes, str, None] = b"", config=None) -> HMACSession:
    """An authorization only HMAC session, no parameter encryption."""
    return hmac(key_material=PlainAuth(auth_value), encryption=None, config=config)
