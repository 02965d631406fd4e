"""Run the kubetally API server with Granian."""

import os

from granian import Granian
from granian.constants import Interfaces


def main() -> None:
    Granian(
        "kubetally.main:app",
        address=os.getenv("KUBETALLY_HOST", "0.0.0.0"),
        port=int(os.getenv("KUBETALLY_PORT", "8080")),
        interface=Interfaces.ASGI,
        log_access=True,
    ).serve()


if __name__ == "__main__":
    main()
