import sys
import contextlib

from tpm2_pysession import (
    ESAPI,
    TPM2_RC,
    TPM2_SU,
    TSS2_Exception,
    salted,
)
from tpm2_pysession.utils import seal, unseal


def main():
    # Usage information
    if len(sys.argv) not in (2, 3):
        print(f"Seal a secret under a salted session and unseal it again", file=sys.stderr)
        print(f"", file=sys.stderr)
        print(f"Usage: {sys.argv[0]} secret [tcti]", file=sys.stderr)
        sys.exit(1)
    secret = sys.argv[1].encode()
    tcti = sys.argv[2] if len(sys.argv) == 3 else "simulator"
    with contextlib.ExitStack() as ctx_stack:
        # Connect to the TPM, "simulator" runs an in-process software TPM
        ectx = ctx_stack.enter_context(ESAPI(tcti))
        try:
            ectx.startup(TPM2_SU.CLEAR)
        except TSS2_Exception as e:
            if e.error != TPM2_RC.INITIALIZE:
                raise
        # A storage key to seal under and to salt the session with
        primary, public, _ = ectx.create_primary(None, "rsa2048")
        ctx_stack.callback(ectx.flush_context, primary)
        # The salt is encrypted to the primary key, only the TPM can recover it
        session = ctx_stack.enter_context(
            ectx.start_auth_session(salted(primary, public))
        )
        # The sensitive data travels encrypted to the TPM
        private, sealed_public = seal(
            ectx, primary, secret, auth="sealpass", encrypt_session=session
        )
        # And encrypted on the way back
        value = unseal(
            ectx,
            primary,
            private,
            sealed_public,
            auth="sealpass",
            encrypt_session=session,
        )
        if value != secret:
            raise AssertionError("unsealed data does not match the secret")
        # Random bytes from the TPM, encrypted by the session
        random = ectx.get_random(16, session1=session)
        print(f"unsealed: {value.decode()}")
        print(f"random: {len(random)} bytes")


if __name__ == "__main__":
    main()
