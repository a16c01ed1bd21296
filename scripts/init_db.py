from __future__ import annotations
import logging
import os
import sys

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from pmsync.db.connection import get_engine
from pmsync.db.schema import create_schema
from pmsync.utils.logging import configure_logging


def main() -> None:
    configure_logging()
    log = logging.getLogger("init_db")
    engine = get_engine()
    create_schema(engine)
    log.info("DB schema applied successfully.")


if __name__ == "__main__":
    main()
