# SPDX-License-Identifier: BSD-2
"""
The types module contains the TPM structures from the TCG TPM 2.0 library specification,
Part 2 "Structures", that the session layer and its commands put on the wire.

Every structure can be initialized from named arguments, is marshaled with ``marshal()``
and unmarshaled with the ``unmarshal(buf)`` class method, which returns the instance
and the number of bytes consumed.
"""
import binascii
from typing import NamedTuple, Tuple, Union

from .constants import (
    TPM_INT_MU,
    TPM2_ALG,
    TPM2_ECC,
    TPMA_OBJECT,
    TPMA_NV,
    TPMA_SESSION,
)
from .internal.crypto import _getname
from .internal.utils import _unpack_int, _unpack_sized, _pack_sized


class UINT16(int, TPM_INT_MU):
    _size = 2


class UINT32(int, TPM_INT_MU):
    _size = 4


class TPM2_HANDLE(int, TPM_INT_MU):
    """A handle to a TPM address"""

    _size = 4


class TPM_OBJECT(object):
    """Abstract Base class for all TPM structures. Not suitable for direct instantiation.

    Subclasses list their members in ``_fields`` as ``(name, type)`` pairs, in wire order.
    Each type must provide ``marshal()`` and ``unmarshal(buf)``.
    """

    _fields = ()

    def __init__(self, **kwargs):
        for name, tipe in self._fields:
            value = kwargs.pop(name, None)
            if value is None:
                value = tipe()
            elif not isinstance(value, tipe):
                value = tipe(value)
            object.__setattr__(self, name, value)
        if kwargs:
            raise AttributeError(
                f"{self.__class__.__name__} has no field {', '.join(kwargs)}"
            )

    def __setattr__(self, key, value):
        for name, tipe in self._fields:
            if name == key:
                if value is not None and not isinstance(value, tipe):
                    value = tipe(value)
                break
        else:
            raise AttributeError(f"{self.__class__.__name__} has no field {key}")
        object.__setattr__(self, key, value)

    def __eq__(self, value):
        if not isinstance(value, self.__class__):
            return False
        return self.marshal() == value.marshal()

    def __repr__(self):
        fields = ", ".join(f"{n}={getattr(self, n)!r}" for n, _ in self._fields)
        return f"{self.__class__.__name__}({fields})"

    def marshal(self) -> bytes:
        """Marshal instance into bytes.

        Returns:
            Returns the marshaled type as bytes.
        """
        return b"".join(getattr(self, name).marshal() for name, _ in self._fields)

    @classmethod
    def unmarshal(cls, buf: bytes) -> Tuple["TPM_OBJECT", int]:
        """Unmarshal bytes into type instance.

        Args:
            buf (bytes): The bytes to be unmarshaled.

        Returns:
            Returns an instance of the current type and the number of bytes consumed.
        """
        kwargs = dict()
        offset = 0
        for name, tipe in cls._fields:
            value, consumed = tipe.unmarshal(buf[offset:])
            kwargs[name] = value
            offset += consumed
        return (cls(**kwargs), offset)


class TPM2B_SIMPLE_OBJECT(TPM_OBJECT):
    """ Abstract Base class for all TPM2B Simple Objects. A Simple object contains only
    a size and byte buffer fields. This is not suitable for direct instantiation."""

    _bytefield = "buffer"
    _maxsize = 0xFFFF

    def __init__(self, value: Union[bytes, str, None] = None, **kwargs):
        if value is None:
            value = kwargs.pop(self._bytefield, b"")
        if kwargs:
            raise AttributeError(
                f"{self.__class__.__name__} has no field {', '.join(kwargs)}"
            )
        self._set(value)

    def _set(self, value):
        if isinstance(value, str):
            value = value.encode()
        elif isinstance(value, TPM2B_SIMPLE_OBJECT):
            value = bytes(value)
        value = bytes(value)
        if len(value) > self._maxsize:
            raise ValueError(
                f"{self.__class__.__name__} holds at most {self._maxsize} bytes, got {len(value)}"
            )
        object.__setattr__(self, "_buffer", value)

    def __setattr__(self, key, value):
        if key == "size":
            raise AttributeError(f"{key} is read only")
        if key != self._bytefield:
            raise AttributeError(f"{self.__class__.__name__} has no field {key}")
        self._set(value)

    def __getattr__(self, key):
        if key == self._bytefield:
            return self._buffer
        if key == "size":
            return len(self._buffer)
        raise AttributeError(f"{self.__class__.__name__} has no field {key}")

    def __len__(self):
        return len(self._buffer)

    def __getitem__(self, index):
        return self._buffer[index]

    def __bytes__(self):
        return self._buffer

    def __str__(self) -> str:
        """Returns a hex string representation of the underlying buffer.

        This is the same as:

        .. code-block:: python

            bytes(tpm2b_type).hex()

        Returns (str):
            A hex encoded string of the buffer.
        """
        return binascii.hexlify(self._buffer).decode()

    def __repr__(self):
        return f"{self.__class__.__name__}({self._buffer!r})"

    def __eq__(self, value):
        if isinstance(value, TPM2B_SIMPLE_OBJECT):
            value = bytes(value)
        return self._buffer == value

    def __hash__(self):
        return hash(self._buffer)

    def marshal(self) -> bytes:
        return _pack_sized(self._buffer)

    @classmethod
    def unmarshal(cls, buf: bytes):
        value, offset = _unpack_sized(buf, 0)
        return (cls(value), offset)


class TPM2B_DIGEST(TPM2B_SIMPLE_OBJECT):
    _maxsize = 64


class TPM2B_NONCE(TPM2B_DIGEST):
    pass


class TPM2B_AUTH(TPM2B_DIGEST):
    pass


class TPM2B_NAME(TPM2B_SIMPLE_OBJECT):
    _bytefield = "name"
    _maxsize = 68


class TPM2B_DATA(TPM2B_SIMPLE_OBJECT):
    _maxsize = 64


class TPM2B_SENSITIVE_DATA(TPM2B_SIMPLE_OBJECT):
    pass


class TPM2B_ENCRYPTED_SECRET(TPM2B_SIMPLE_OBJECT):
    _bytefield = "secret"


class TPM2B_PRIVATE(TPM2B_SIMPLE_OBJECT):
    pass


class TPM2B_MAX_NV_BUFFER(TPM2B_SIMPLE_OBJECT):
    pass


class TPM2B_PUBLIC_KEY_RSA(TPM2B_SIMPLE_OBJECT):
    _maxsize = 512


class TPM2B_ECC_PARAMETER(TPM2B_SIMPLE_OBJECT):
    _maxsize = 128


class TPMS_ECC_POINT(TPM_OBJECT):
    _fields = (("x", TPM2B_ECC_PARAMETER), ("y", TPM2B_ECC_PARAMETER))


class TPMT_SYM_DEF(TPM_OBJECT):
    """Symmetric algorithm of a session, NULL for no parameter encryption."""

    _fields = (("algorithm", TPM2_ALG), ("keyBits", UINT16), ("mode", TPM2_ALG))

    def __init__(self, **kwargs):
        kwargs.setdefault("algorithm", TPM2_ALG.NULL)
        super().__init__(**kwargs)

    def marshal(self):
        b = self.algorithm.marshal()
        if self.algorithm == TPM2_ALG.NULL:
            return b
        b += self.keyBits.marshal()
        if self.algorithm == TPM2_ALG.XOR:
            return b
        return b + self.mode.marshal()

    @classmethod
    def unmarshal(cls, buf):
        alg, offset = TPM2_ALG.unmarshal(buf)
        if alg == TPM2_ALG.NULL:
            return (cls(algorithm=alg), offset)
        bits, offset = _unpack_int(buf, offset, 2)
        if alg == TPM2_ALG.XOR:
            return (cls(algorithm=alg, keyBits=bits), offset)
        mode, offset = _unpack_int(buf, offset, 2)
        return (cls(algorithm=alg, keyBits=bits, mode=mode), offset)


class TPMT_SYM_DEF_OBJECT(TPMT_SYM_DEF):
    pass


class TPMT_ASYM_SCHEME(TPM_OBJECT):
    """A scheme selector followed by its hash algorithm, as used by RSA, ECC and KDF schemes."""

    _fields = (("scheme", TPM2_ALG), ("hashAlg", TPM2_ALG))

    def __init__(self, **kwargs):
        kwargs.setdefault("scheme", TPM2_ALG.NULL)
        super().__init__(**kwargs)

    def marshal(self):
        if self.scheme == TPM2_ALG.NULL:
            return self.scheme.marshal()
        return self.scheme.marshal() + self.hashAlg.marshal()

    @classmethod
    def unmarshal(cls, buf):
        scheme, offset = TPM2_ALG.unmarshal(buf)
        if scheme == TPM2_ALG.NULL:
            return (cls(scheme=scheme), offset)
        halg, consumed = TPM2_ALG.unmarshal(buf[offset:])
        return (cls(scheme=scheme, hashAlg=halg), offset + consumed)


class TPMT_KDF_SCHEME(TPMT_ASYM_SCHEME):
    pass


class TPMT_KEYEDHASH_SCHEME(TPMT_ASYM_SCHEME):
    pass


class TPMS_RSA_PARMS(TPM_OBJECT):
    _fields = (
        ("symmetric", TPMT_SYM_DEF_OBJECT),
        ("scheme", TPMT_ASYM_SCHEME),
        ("keyBits", UINT16),
        ("exponent", UINT32),
    )


class TPMS_ECC_PARMS(TPM_OBJECT):
    _fields = (
        ("symmetric", TPMT_SYM_DEF_OBJECT),
        ("scheme", TPMT_ASYM_SCHEME),
        ("curveID", TPM2_ECC),
        ("kdf", TPMT_KDF_SCHEME),
    )


class TPMS_KEYEDHASH_PARMS(TPM_OBJECT):
    _fields = (("scheme", TPMT_KEYEDHASH_SCHEME),)


_public_parms = {
    TPM2_ALG.RSA: (TPMS_RSA_PARMS, TPM2B_PUBLIC_KEY_RSA),
    TPM2_ALG.ECC: (TPMS_ECC_PARMS, TPMS_ECC_POINT),
    TPM2_ALG.KEYEDHASH: (TPMS_KEYEDHASH_PARMS, TPM2B_DIGEST),
}


class TPMT_PUBLIC(TPM_OBJECT):
    """The public area of an object.

    The types of ``parameters`` and ``unique`` are selected by ``type``, RSA, ECC and
    KEYEDHASH objects are supported.
    """

    _fields = (
        ("type", TPM2_ALG),
        ("nameAlg", TPM2_ALG),
        ("objectAttributes", TPMA_OBJECT),
        ("authPolicy", TPM2B_DIGEST),
        ("parameters", TPM_OBJECT),
        ("unique", TPM_OBJECT),
    )

    def __init__(self, **kwargs):
        tipe = TPM2_ALG(kwargs.get("type", TPM2_ALG.KEYEDHASH))
        if tipe not in _public_parms:
            raise ValueError(f"unsupported object type {tipe}")
        parms, unique = _public_parms[tipe]
        object.__setattr__(self, "type", tipe)
        object.__setattr__(self, "nameAlg", TPM2_ALG(kwargs.get("nameAlg", TPM2_ALG.SHA256)))
        object.__setattr__(
            self, "objectAttributes", TPMA_OBJECT(kwargs.get("objectAttributes", 0))
        )
        object.__setattr__(self, "authPolicy", TPM2B_DIGEST(kwargs.get("authPolicy")))
        p = kwargs.get("parameters")
        object.__setattr__(self, "parameters", parms() if p is None else p)
        u = kwargs.get("unique")
        if u is None:
            u = unique()
        elif not isinstance(u, unique):
            u = unique(u)
        object.__setattr__(self, "unique", u)
        extra = set(kwargs) - set(n for n, _ in self._fields)
        if extra:
            raise AttributeError(f"TPMT_PUBLIC has no field {', '.join(extra)}")

    def __setattr__(self, key, value):
        if key not in ("parameters", "unique"):
            return super().__setattr__(key, value)
        object.__setattr__(self, key, value)

    @classmethod
    def unmarshal(cls, buf):
        tipe, offset = TPM2_ALG.unmarshal(buf)
        if tipe not in _public_parms:
            raise ValueError(f"unsupported object type {tipe}")
        parms, unique = _public_parms[tipe]
        kwargs = dict(type=tipe)
        for name, ftype in (
            ("nameAlg", TPM2_ALG),
            ("objectAttributes", TPMA_OBJECT),
            ("authPolicy", TPM2B_DIGEST),
            ("parameters", parms),
            ("unique", unique),
        ):
            value, consumed = ftype.unmarshal(buf[offset:])
            kwargs[name] = value
            offset += consumed
        return (cls(**kwargs), offset)

    def get_name(self) -> TPM2B_NAME:
        """Get the TPM name of the public area.

        This function requires a populated TPMT_PUBLIC and will NOT go to the TPM
        to retrieve the name, and instead calculates it manually.

        Returns:
            Returns TPM2B_NAME.

        Raises:
            ValueError: Unsupported name digest algorithm.
        """
        name = _getname(self)
        return TPM2B_NAME(name)


class TPM2B_SIZED_OBJECT(TPM_OBJECT):
    """A structure carried with a 2 byte size prefix."""

    def marshal(self):
        return _pack_sized(super().marshal())

    @classmethod
    def unmarshal(cls, buf):
        data, offset = _unpack_sized(buf, 0)
        if not data:
            return (cls(), offset)
        obj, consumed = super().unmarshal(data)
        if consumed != len(data):
            raise ValueError(
                f"{cls.__name__} size {len(data)} does not match its contents ({consumed})"
            )
        return (obj, offset)


class TPM2B_PUBLIC(TPM2B_SIZED_OBJECT):
    _fields = (("publicArea", TPMT_PUBLIC),)

    def get_name(self) -> TPM2B_NAME:
        return self.publicArea.get_name()


class TPMS_SENSITIVE_CREATE(TPM_OBJECT):
    _fields = (("userAuth", TPM2B_AUTH), ("data", TPM2B_SENSITIVE_DATA))


class TPM2B_SENSITIVE_CREATE(TPM2B_SIZED_OBJECT):
    _fields = (("sensitive", TPMS_SENSITIVE_CREATE),)


class TPMS_NV_PUBLIC(TPM_OBJECT):
    _fields = (
        ("nvIndex", TPM2_HANDLE),
        ("nameAlg", TPM2_ALG),
        ("attributes", TPMA_NV),
        ("authPolicy", TPM2B_DIGEST),
        ("dataSize", UINT16),
    )

    def get_name(self) -> TPM2B_NAME:
        """Calculate the name of the NV index from its public area."""
        name = _getname(self)
        return TPM2B_NAME(name)


class TPM2B_NV_PUBLIC(TPM2B_SIZED_OBJECT):
    _fields = (("nvPublic", TPMS_NV_PUBLIC),)

    def get_name(self) -> TPM2B_NAME:
        return self.nvPublic.get_name()


class TPMS_AUTH_COMMAND(TPM_OBJECT):
    _fields = (
        ("sessionHandle", TPM2_HANDLE),
        ("nonce", TPM2B_NONCE),
        ("sessionAttributes", TPMA_SESSION),
        ("hmac", TPM2B_AUTH),
    )


class TPMS_AUTH_RESPONSE(TPM_OBJECT):
    _fields = (
        ("nonce", TPM2B_NONCE),
        ("sessionAttributes", TPMA_SESSION),
        ("hmac", TPM2B_AUTH),
    )


class EntityReference(NamedTuple):
    """A loaded entity, its handle and its name as reported by the TPM."""

    handle: int
    name: bytes


class NVIndexInfo(NamedTuple):
    """A defined NV index, its handle and its name."""

    handle: int
    name: bytes
