from __future__ import annotations

import uvicorn

from .config import HOST, PORT
from .logging_utils import configure_logging


def main() -> None:
    configure_logging()
    uvicorn.run("lmchat.main:app", host=HOST, port=PORT, log_config=None)


if __name__ == "__main__":
    main()
