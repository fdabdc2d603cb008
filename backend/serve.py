#!/usr/bin/env python3
"""Backend server entry point.

The desktop launcher spawns this file with PORT and the QUIRE_* variables
set. It can also be run by hand for development:

    cd backend && PORT=8787 python serve.py
"""

import uvicorn

from app.config import settings
from app.main import app


def main() -> None:
    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
