import sys
import time
import contextlib

from tpm2_pysession import (
    ESAPI,
    TPM2_RC,
    TPM2_RH,
    TPM2_SU,
    TSS2_Exception,
)
from tpm2_pysession.utils import (
    bound_session,
    salted_session,
    sensitive_create,
    unbound_session,
)


def timed(ectx, iterations, make_session):
    start = time.perf_counter()
    for _ in range(iterations):
        with contextlib.ExitStack() as stack:
            session = make_session()
            if session.is_persistent:
                stack.enter_context(session)
            handle, _, _ = ectx.create_primary(
                sensitive_create("keypass"), "ecc256", session1=session
            )
            ectx.flush_context(handle)
    return (time.perf_counter() - start) * 1000 / iterations


def main():
    # Usage information
    if len(sys.argv) not in (2, 3) or not sys.argv[1].isdigit():
        print(f"Compare the cost of session kinds for a key creation", file=sys.stderr)
        print(f"", file=sys.stderr)
        print(f"Usage: {sys.argv[0]} iterations [tcti]", file=sys.stderr)
        sys.exit(1)
    iterations = max(int(sys.argv[1]), 1)
    tcti = sys.argv[2] if len(sys.argv) == 3 else "simulator"
    with contextlib.ExitStack() as ctx_stack:
        ectx = ctx_stack.enter_context(ESAPI(tcti))
        try:
            ectx.startup(TPM2_SU.CLEAR)
        except TSS2_Exception as e:
            if e.error != TPM2_RC.INITIALIZE:
                raise
        # The key salting the salted sessions, created once
        salt_key, _, _ = ectx.create_primary(None, "rsa2048")
        ctx_stack.callback(ectx.flush_context, salt_key)

        kinds = (
            ("unbound ephemeral", lambda: unbound_session(ectx)),
            ("unbound persistent", lambda: unbound_session(ectx, persistent=True)),
            ("bound ephemeral", lambda: bound_session(ectx, TPM2_RH.OWNER)),
            ("salted ephemeral", lambda: salted_session(ectx, salt_key)),
            ("salted persistent", lambda: salted_session(ectx, salt_key, persistent=True)),
        )
        for name, make_session in kinds:
            cost = timed(ectx, iterations, make_session)
            print(f"{name}: {cost:.2f} ms per key")


if __name__ == "__main__":
    main()
