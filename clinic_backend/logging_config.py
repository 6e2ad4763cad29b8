from __future__ import annotations

import logging
import sys

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"

_configured = False


def configure_logging(level: str = "INFO") -> None:
    """
    Configura il root logger una sola volta (API e CLI).
    Le chiamate successive aggiornano solo il livello.
    """
    global _configured

    root = logging.getLogger()
    root.setLevel(level.upper())
    if _configured:
        return

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)

    # passlib logga un warning innocuo sulla versione di bcrypt
    logging.getLogger("passlib").setLevel(logging.ERROR)
    _configured = True
