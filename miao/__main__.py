"""
Entry point for running miao via `python -m miao`.

Starts the FastAPI server with uvicorn.
"""

import uvicorn

from .config import config
from .settings import SettingsStore


def main():
    """Run the miao server."""
    settings = SettingsStore(config.settings_path).load()
    uvicorn.run(
        "miao.main:app",
        host=config.host,
        port=settings.port or config.port,
        reload=False,
    )


if __name__ == "__main__":
    main()
