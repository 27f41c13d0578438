"""
Main entrypoint.

Usage:
    python -m paysync keygen        # print a fresh ENCRYPTION_KEY
    python -m paysync               # serve the API under uvicorn
    uvicorn paysync.api.main:app --host 0.0.0.0 --port 8000  # same, explicitly
"""
import logging
import sys

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)


def _run_keygen() -> None:
    from paysync.vault import generate_key
    print(generate_key())


def _run_server() -> None:
    import uvicorn

    from paysync.config import get_settings
    from paysync.vault import CredentialVault, CryptoError

    # Fail before binding the port rather than inside the lifespan hook
    try:
        CredentialVault(get_settings().encryption_key)
    except CryptoError as exc:
        logger.error("%s", exc)
        sys.exit(1)

    uvicorn.run("paysync.api.main:app", host="0.0.0.0", port=8000)


if __name__ == "__main__":
    # Dispatch on first argument: `python -m paysync keygen` or just `python -m paysync`
    if len(sys.argv) > 1 and sys.argv[1] == "keygen":
        _run_keygen()
    else:
        _run_server()
