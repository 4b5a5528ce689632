# SPDX-License-Identifier: BSD-2
""" This module contains the constant values from the TCG TPM 2.0 library specification
(Part 2 "Structures") that the session layer needs.

Along with helpers to go from string values to constants and constant values to string values.
"""
from .internal.utils import _CLASS_INT_ATTRS_from_string, _unpack_int


class TPM_INT_MU:
    """Mixin class for marshaling/unmarshaling int types."""

    # width of the type on the wire in bytes
    _size = 4

    def marshal(self):
        """Marshal instance into bytes.

        Returns:
            Returns the marshaled type as bytes.
        """
        return int(self).to_bytes(self._size, byteorder="big")

    @classmethod
    def unmarshal(cls, buf):
        """Unmarshal bytes into type instance.

        Args:
            buf (bytes): The bytes to be unmarshaled.

        Returns:
            Returns an instance of the current type and the number of bytes consumed.
        """
        value, offset = _unpack_int(buf, 0, cls._size)
        return (cls(value), offset)


class TPM_FRIENDLY_ITER(type):
    """Metaclass to make constants classes iterable"""

    def __iter__(cls):
        """Returns an iterator over the constants in the class.

        Returns:
            (int): The int values of the constants in the class.

        Example:
            list(TPM2_SE) -> [0, 1, 3]
        """
        for value in cls._members_.values():
            yield value


class TPM_FRIENDLY_INT(int, TPM_INT_MU, metaclass=TPM_FRIENDLY_ITER):
    _FIXUP_MAP = {}

    @staticmethod
    def _get_members(cls) -> dict:
        """Finds all constants defined at class level."""
        members = dict()
        # Inherit constants from parent classes
        for sc in cls.__mro__[1:]:
            if not issubclass(sc, TPM_FRIENDLY_INT):
                break
            super_members = sc._get_members(sc)
            members.update(super_members)
        # Any class attribute that is an int and is not marked as private is a member
        for name, value in vars(cls).items():
            if not isinstance(value, int) or name.startswith("_"):
                continue
            members[name] = value
        return members

    def __init_subclass__(cls, **kwargs):
        super().__init_subclass__(**kwargs)
        members = TPM_FRIENDLY_INT._get_members(cls)
        # Ensure that the members of the constant class have the class as the type
        for name, value in members.items():
            fixed_value = cls(value)
            members[name] = fixed_value
            setattr(cls, name, fixed_value)
        # Save the members so they can be used later
        cls._members_ = members

    @classmethod
    def parse(cls, value: str) -> int:
        # If it's a string initializer value, see if it matches anything in the list
        if isinstance(value, str):
            try:
                x = _CLASS_INT_ATTRS_from_string(cls, value, cls._FIXUP_MAP)
                if not isinstance(x, int):
                    raise KeyError(f'Expected int got: "{type(x)}"')
                return x
            except KeyError:
                raise ValueError(
                    f'Could not convert friendly name to value, got: "{value}"'
                )
        else:
            raise TypeError(f'Expected value to be a str object, got: "{type(value)}"')

    @classmethod
    def contains(cls, value: int) -> bool:
        """Indicates if a class contains a numeric constant.

        Args:
            value (int): The raw numerical number to test for.

        Returns:
            (bool): True if the class contains the constant, False otherwise.

        Example:
            TPM2_ALG.contains(0x000B) -> True
        """
        return value in cls._members_.values()

    @classmethod
    def to_string(cls, value: int) -> str:
        """Converts an integer value into it's friendly string name for that class.

        Args:
            value (int): The raw numerical number to try and convert to a name.

        Returns:
            (str): The string of the constant defining the raw numeric.

        Raises:
            ValueError: If the numeric does not match a constant.

        Example:
            TPM2_RH.to_string(0x40000001) -> 'TPM2_RH.OWNER'
        """
        # Take the shortest match, ie SHA1 over SHA.
        m = None
        items = vars(cls).items()
        for k, v in items:
            if isinstance(v, int) and v == value and (m is None or len(k) < len(m)):
                m = k

        if m is None:
            raise ValueError(f"Could not match {value} to class {cls.__name__}")

        return f"{cls.__name__}.{m}"

    def __str__(self) -> str:
        """Returns a string value of the constant normalized to lowercase.

        Returns:
            (str): a string value of the constant normalized to lowercase.

        Example:
            str(TPM2_ALG.SHA256) -> 'sha256'
        """
        for k, v in vars(self.__class__).items():
            if isinstance(v, int) and int(self) == v:
                return k.lower()
        return str(int(self))

    def __add__(self, value):
        return self.__class__(int(self).__add__(value))

    def __and__(self, value):
        return self.__class__(int(self).__and__(value))

    def __invert__(self):
        return self.__class__(int(self).__invert__())

    def __lshift__(self, value):
        return self.__class__(int(self).__lshift__(value))

    def __or__(self, value):
        return self.__class__(int(self).__or__(value))

    def __radd__(self, value):
        return self.__class__(int(self).__radd__(value))

    def __rand__(self, value):
        return self.__class__(int(self).__rand__(value))

    def __ror__(self, value):
        return self.__class__(int(self).__ror__(value))

    def __rshift__(self, value):
        return self.__class__(int(self).__rshift__(value))

    def __sub__(self, value):
        return self.__class__(int(self).__sub__(value))

    def __xor__(self, value):
        return self.__class__(int(self).__xor__(value))


class TPMA_FRIENDLY_INTLIST(TPM_FRIENDLY_INT):
    _MASKS = tuple()

    @classmethod
    def parse(cls, value: str) -> int:
        """Converts a string of | separated constant values into it's integer value.

        Given a pipe "|" separated list of string constant values that represent the
        bitwise values returns the value itself. The value "" (empty string) returns
        a 0.

        Args:
            value (str): The string "bitwise" expression of the object or the empty string.

        Returns:
            The integer result.

        Raises:
            TypeError: If the value is not a str.
            ValueError: If a field portion of the str does not match a constant.

        Examples:
            TPMA_SESSION.parse("continuesession|decrypt") -> 0x21
            TPMA_NV.parse("ownerread|ownerwrite") -> 0x20002
        """

        intvalue = 0

        if not isinstance(value, str):
            raise TypeError(f'Expected value to be a str, got: "{type(value)}"')

        if value == "":
            return cls(0)

        hunks = value.split("|") if "|" in value else [value]
        for k in list(hunks):
            if "=" not in k:
                continue
            hname, hval = k.split("=", 1)
            v = int(hval, base=0)
            hunks.remove(k)
            found = False
            for mask, shift, name in cls._MASKS:
                if hname != name:
                    continue
                mv = mask >> shift
                if v > mv:
                    raise ValueError(
                        f"value for {name} is to large, got 0x{v:x}, max is 0x{mv:x}"
                    )
                intvalue = intvalue | (v << shift)
                found = True
                break
            if not found:
                raise ValueError(f"unknown mask type {hname}")
        for k in hunks:
            try:
                intvalue |= _CLASS_INT_ATTRS_from_string(cls, k, cls._FIXUP_MAP)
            except KeyError:
                raise ValueError(
                    f'Could not convert friendly name to value, got: "{k}"'
                )

        return cls(intvalue)

    def __str__(self):
        """Given a constant, return the string bitwise representation.

        Each constant is seperated by the "|" (pipe) character.

        Returns:
            (str): a bitwise string value of the fields for the constant normalized to lowercase.

        Raises:
            ValueError: If their are unmatched bits in the constant value.

        Example:
            str(TPMA_SESSION(TPMA_SESSION.CONTINUESESSION|TPMA_SESSION.DECRYPT)) -> 'continuesession|decrypt'
        """
        cv = int(self)
        ints = list()
        for k, v in vars(self.__class__).items():
            if cv == 0:
                break
            if (
                not isinstance(v, int)
                or k.startswith(("_", "DEFAULT"))
                or k.endswith(("_MASK", "_SHIFT"))
            ):
                continue
            for fk, fv in self._FIXUP_MAP.items():
                if k == fv:
                    k = fk
                    break
            if v == 0 or v & cv != v:
                continue
            ints.append(k.lower())
            cv = cv ^ v
        for mask, shift, name in self._MASKS:
            if not cv & mask:
                continue
            v = (cv & mask) >> shift
            s = f"{name}=0x{v:x}"
            cv = cv ^ (cv & mask)
            ints.append(s)
        if cv:
            raise ValueError(f"unnmatched values left: 0x{cv:x}")
        return "|".join(ints)


class TPM2_MAX(TPM_FRIENDLY_INT):
    DIGEST_BUFFER = 1024
    NV_BUFFER_SIZE = 2048
    SYM_DATA = 128
    SYM_BLOCK_SIZE = 16
    COMMAND_SIZE = 4096
    RESPONSE_SIZE = 4096


class TPM2_RH(TPM_FRIENDLY_INT):
    FIRST = 0x40000000
    SRK = 0x40000000
    OWNER = 0x40000001
    REVOKE = 0x40000002
    TRANSPORT = 0x40000003
    OPERATOR = 0x40000004
    ADMIN = 0x40000005
    EK = 0x40000006
    NULL = 0x40000007
    UNASSIGNED = 0x40000008
    PW = 0x40000009
    LOCKOUT = 0x4000000A
    ENDORSEMENT = 0x4000000B
    PLATFORM = 0x4000000C
    PLATFORM_NV = 0x4000000D


class TPM2_ALG(TPM_FRIENDLY_INT):
    _size = 2
    ERROR = 0x0000
    RSA = 0x0001
    SHA = 0x0004
    SHA1 = 0x0004
    HMAC = 0x0005
    AES = 0x0006
    MGF1 = 0x0007
    KEYEDHASH = 0x0008
    XOR = 0x000A
    SHA256 = 0x000B
    SHA384 = 0x000C
    SHA512 = 0x000D
    NULL = 0x0010
    RSASSA = 0x0014
    RSAES = 0x0015
    RSAPSS = 0x0016
    OAEP = 0x0017
    ECDSA = 0x0018
    ECDH = 0x0019
    KDF1_SP800_56A = 0x0020
    KDF2 = 0x0021
    KDF1_SP800_108 = 0x0022
    ECC = 0x0023
    SYMCIPHER = 0x0025
    CTR = 0x0040
    OFB = 0x0041
    CBC = 0x0042
    CFB = 0x0043
    ECB = 0x0044


class TPM2_ECC(TPM_FRIENDLY_INT):
    _size = 2
    NONE = 0x0000
    NIST_P192 = 0x0001
    NIST_P224 = 0x0002
    NIST_P256 = 0x0003
    NIST_P384 = 0x0004
    NIST_P521 = 0x0005

    _FIXUP_MAP = {
        "192": "NIST_P192",
        "224": "NIST_P224",
        "256": "NIST_P256",
        "384": "NIST_P384",
        "521": "NIST_P521",
    }


class TPM2_CC(TPM_FRIENDLY_INT):
    NV_UndefineSpace = 0x00000122
    HierarchyChangeAuth = 0x00000129
    NV_DefineSpace = 0x0000012A
    CreatePrimary = 0x00000131
    NV_Write = 0x00000137
    Startup = 0x00000144
    Create = 0x00000153
    Load = 0x00000157
    Unseal = 0x0000015E
    FlushContext = 0x00000165
    NV_Read = 0x0000014E
    StartAuthSession = 0x00000176
    ReadPublic = 0x00000173
    GetRandom = 0x0000017B
    NV_ReadPublic = 0x00000169


class TPM2_ST(TPM_FRIENDLY_INT):
    _size = 2
    RSP_COMMAND = 0x00C4
    NULL = 0x8000
    NO_SESSIONS = 0x8001
    SESSIONS = 0x8002
    CREATION = 0x8021


class TPM2_SU(TPM_FRIENDLY_INT):
    _size = 2
    CLEAR = 0x0000
    STATE = 0x0001


class TPM2_SE(TPM_FRIENDLY_INT):
    _size = 1
    HMAC = 0x00
    POLICY = 0x01
    TRIAL = 0x03


class TPM2_HT(TPM_FRIENDLY_INT):
    _size = 1
    PCR = 0x00
    NV_INDEX = 0x01
    HMAC_SESSION = 0x02
    POLICY_SESSION = 0x03
    PERMANENT = 0x40
    TRANSIENT = 0x80
    PERSISTENT = 0x81


class TPM2_HR(TPM_FRIENDLY_INT):
    HANDLE_MASK = 0x00FFFFFF
    RANGE_MASK = 0xFF000000
    SHIFT = 24
    PCR = TPM2_HT.PCR << SHIFT
    HMAC_SESSION = TPM2_HT.HMAC_SESSION << SHIFT
    POLICY_SESSION = TPM2_HT.POLICY_SESSION << SHIFT
    TRANSIENT = TPM2_HT.TRANSIENT << SHIFT
    PERSISTENT = TPM2_HT.PERSISTENT << SHIFT
    NV_INDEX = TPM2_HT.NV_INDEX << SHIFT
    PERMANENT = TPM2_HT.PERMANENT << SHIFT


class TPM2_RC(TPM_FRIENDLY_INT):
    SUCCESS = 0x000
    BAD_TAG = 0x01E
    VER1 = 0x100
    INITIALIZE = VER1 + 0x000
    FAILURE = VER1 + 0x001
    SEQUENCE = VER1 + 0x003
    PRIVATE = VER1 + 0x00B
    HMAC = VER1 + 0x019
    DISABLED = VER1 + 0x020
    AUTH_TYPE = VER1 + 0x024
    AUTH_MISSING = VER1 + 0x025
    AUTH_UNAVAILABLE = VER1 + 0x02F
    COMMAND_SIZE = VER1 + 0x042
    COMMAND_CODE = VER1 + 0x043
    AUTHSIZE = VER1 + 0x044
    AUTH_CONTEXT = VER1 + 0x045
    NV_RANGE = VER1 + 0x046
    NV_SIZE = VER1 + 0x047
    NV_AUTHORIZATION = VER1 + 0x049
    NV_UNINITIALIZED = VER1 + 0x04A
    NV_SPACE = VER1 + 0x04B
    NV_DEFINED = VER1 + 0x04C
    SENSITIVE = VER1 + 0x055
    FMT1 = 0x080
    ASYMMETRIC = FMT1 + 0x001
    ATTRIBUTES = FMT1 + 0x002
    HASH = FMT1 + 0x003
    VALUE = FMT1 + 0x004
    HIERARCHY = FMT1 + 0x005
    KEY_SIZE = FMT1 + 0x007
    MODE = FMT1 + 0x009
    TYPE = FMT1 + 0x00A
    HANDLE = FMT1 + 0x00B
    KDF = FMT1 + 0x00C
    RANGE = FMT1 + 0x00D
    AUTH_FAIL = FMT1 + 0x00E
    NONCE = FMT1 + 0x00F
    SCHEME = FMT1 + 0x012
    SIZE = FMT1 + 0x015
    SYMMETRIC = FMT1 + 0x016
    TAG = FMT1 + 0x017
    INSUFFICIENT = FMT1 + 0x01A
    KEY = FMT1 + 0x01C
    INTEGRITY = FMT1 + 0x01F
    BAD_AUTH = FMT1 + 0x022
    CURVE = FMT1 + 0x026
    WARN = 0x900
    OBJECT_MEMORY = WARN + 0x002
    SESSION_MEMORY = WARN + 0x003
    MEMORY = WARN + 0x004
    SESSION_HANDLES = WARN + 0x005
    OBJECT_HANDLES = WARN + 0x006
    REFERENCE_H0 = WARN + 0x010
    REFERENCE_S0 = WARN + 0x018
    LOCKOUT = WARN + 0x021
    RETRY = WARN + 0x022
    H = 0x000
    P = 0x040
    S = 0x800
    RC1 = 0x100
    RC2 = 0x200
    RC3 = 0x300
    N_MASK = 0xF00


class TPMA_SESSION(TPMA_FRIENDLY_INTLIST):
    _size = 1
    CONTINUESESSION = 0x00000001
    AUDITEXCLUSIVE = 0x00000002
    AUDITRESET = 0x00000004
    DECRYPT = 0x00000020
    ENCRYPT = 0x00000040
    AUDIT = 0x00000080


class TPMA_OBJECT(TPMA_FRIENDLY_INTLIST):
    FIXEDTPM = 0x00000002
    STCLEAR = 0x00000004
    FIXEDPARENT = 0x00000010
    SENSITIVEDATAORIGIN = 0x00000020
    USERWITHAUTH = 0x00000040
    ADMINWITHPOLICY = 0x00000080
    NODA = 0x00000400
    ENCRYPTEDDUPLICATION = 0x00000800
    RESTRICTED = 0x00010000
    DECRYPT = 0x00020000
    SIGN_ENCRYPT = 0x00040000

    DEFAULT_SEAL_ATTRS = FIXEDTPM | FIXEDPARENT | USERWITHAUTH | NODA

    DEFAULT_STORAGE_ATTRS = (
        RESTRICTED
        | DECRYPT
        | FIXEDTPM
        | FIXEDPARENT
        | SENSITIVEDATAORIGIN
        | USERWITHAUTH
    )

    _FIXUP_MAP = {
        "SIGN": "SIGN_ENCRYPT",
        "ENCRYPT": "SIGN_ENCRYPT",
    }


class TPM2_NT(TPM_FRIENDLY_INT):
    ORDINARY = 0x0
    COUNTER = 0x1
    BITS = 0x2
    EXTEND = 0x4


class TPMA_NV(TPMA_FRIENDLY_INTLIST):

    _FIXUP_MAP = {"NODA": "NO_DA"}

    PPWRITE = 0x00000001
    OWNERWRITE = 0x00000002
    AUTHWRITE = 0x00000004
    POLICYWRITE = 0x00000008
    TPM2_NT_MASK = 0x000000F0
    TPM2_NT_SHIFT = 4
    POLICY_DELETE = 0x00000400
    WRITELOCKED = 0x00000800
    WRITEALL = 0x00001000
    WRITEDEFINE = 0x00002000
    WRITE_STCLEAR = 0x00004000
    GLOBALLOCK = 0x00008000
    PPREAD = 0x00010000
    OWNERREAD = 0x00020000
    AUTHREAD = 0x00040000
    POLICYREAD = 0x00080000
    NO_DA = 0x02000000
    ORDERLY = 0x04000000
    CLEAR_STCLEAR = 0x08000000
    READLOCKED = 0x10000000
    WRITTEN = 0x20000000
    PLATFORMCREATE = 0x40000000
    READ_STCLEAR = 0x80000000

    _MASKS = ((TPM2_NT_MASK, TPM2_NT_SHIFT, "nt"),)

    @property
    def nt(self) -> TPM2_NT:
        """TPM2_NT: The type of the NV area"""
        return TPM2_NT((self & self.TPM2_NT_MASK) >> self.TPM2_NT_SHIFT)
