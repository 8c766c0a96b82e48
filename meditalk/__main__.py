from __future__ import annotations

import os

import uvicorn

from meditalk.api.main import app


def main() -> None:
    uvicorn.run(
        app,
        host=os.getenv("MEDITALK_HOST", "127.0.0.1"),
        port=int(os.getenv("MEDITALK_PORT", "8000")),
        log_level=os.getenv("MEDITALK_LOG_LEVEL", "INFO").lower(),
    )


if __name__ == "__main__":
    main()
