# SPDX-License-Identifier: BSD-2

from ..types import (
    TPMT_SYM_DEF_OBJECT,
    TPM2B_PUBLIC,
    TPMT_PUBLIC,
    TPMS_RSA_PARMS,
    TPMT_ASYM_SCHEME,
    TPMS_ECC_PARMS,
    TPMT_KDF_SCHEME,
    TPMS_KEYEDHASH_PARMS,
    TPMT_KEYEDHASH_SCHEME,
)
from ..constants import (
    TPM2_ALG,
    TPMA_OBJECT,
    TPM2_ECC,
)


class template_attributes:
    storage = TPMA_OBJECT.DEFAULT_STORAGE_ATTRS
    seal = TPMA_OBJECT.DEFAULT_SEAL_ATTRS


class template_symmetric:
    low = TPMT_SYM_DEF_OBJECT(
        algorithm=TPM2_ALG.AES, keyBits=128, mode=TPM2_ALG.CFB,
    )


def storage_template(alg: str = "rsa2048", nameAlg: int = TPM2_ALG.SHA256) -> TPM2B_PUBLIC:
    """Returns the template of a restricted decryption (storage) key.

    Args:
        alg (str): "rsa2048" or "ecc256".
        nameAlg (int): The name algorithm of the key.

    Raises:
        ValueError: for an unknown key algorithm.
    """
    if alg == "rsa2048":
        public = TPMT_PUBLIC(
            type=TPM2_ALG.RSA,
            nameAlg=nameAlg,
            objectAttributes=template_attributes.storage,
            parameters=TPMS_RSA_PARMS(
                symmetric=template_symmetric.low,
                scheme=TPMT_ASYM_SCHEME(scheme=TPM2_ALG.NULL),
                keyBits=2048,
            ),
        )
    elif alg == "ecc256":
        public = TPMT_PUBLIC(
            type=TPM2_ALG.ECC,
            nameAlg=nameAlg,
            objectAttributes=template_attributes.storage,
            parameters=TPMS_ECC_PARMS(
                symmetric=template_symmetric.low,
                scheme=TPMT_ASYM_SCHEME(scheme=TPM2_ALG.NULL),
                curveID=TPM2_ECC.NIST_P256,
                kdf=TPMT_KDF_SCHEME(scheme=TPM2_ALG.NULL),
            ),
        )
    else:
        raise ValueError(f"unknown storage key algorithm {alg}")
    return TPM2B_PUBLIC(publicArea=public)


def seal_template(nameAlg: int = TPM2_ALG.SHA256) -> TPM2B_PUBLIC:
    """Returns the template of a sealed data object."""
    return TPM2B_PUBLIC(
        publicArea=TPMT_PUBLIC(
            type=TPM2_ALG.KEYEDHASH,
            nameAlg=nameAlg,
            objectAttributes=template_attributes.seal,
            parameters=TPMS_KEYEDHASH_PARMS(
                scheme=TPMT_KEYEDHASH_SCHEME(scheme=TPM2_ALG.NULL)
            ),
        )
    )
