import contextlib
import os
import sys

# Add src to path for running directly
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "../src")))

import anyio
from anyio import create_task_group

from coreason_openid_auth import AuthenticationError, OpenIDAuthenticationProvider


async def main() -> None:
    """
    Authenticates bearer tokens the way a broker would.

    Usage: python examples/authenticate_token.py <issuer> <token> [<token> ...]

    All tokens are checked concurrently; the issuer's key set is fetched once.
    """
    if len(sys.argv) < 3:
        print(main.__doc__)
        return

    issuer, tokens = sys.argv[1], sys.argv[2:]
    properties = {
        "ALLOWED_TOKEN_ISSUERS": issuer,
        "ROLE_CLAIM": os.getenv("ROLE_CLAIM", "sub"),
    }

    async with OpenIDAuthenticationProvider.create(properties) as provider:
        print(f">>> Provider initialized for {list(provider.registry or [])}")

        async def check(index: int, token: str) -> None:
            try:
                role = await provider.authenticate(token)
                print(f"    token #{index}: role={role!r}")
            except AuthenticationError as e:
                print(f"    token #{index}: rejected ({e.__cause__!r})")

        async with create_task_group() as tg:
            for index, token in enumerate(tokens):
                tg.start_soon(check, index, token)


if __name__ == "__main__":
    with contextlib.suppress(KeyboardInterrupt):
        anyio.run(main)
