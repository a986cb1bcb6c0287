"""
ASGI entry point for the codemap API.

Usage
-----
Run via the console script:
    $ codemap-api

Or via uvicorn directly:
    $ uvicorn codemap.api.server:app --reload
"""

from __future__ import annotations

import os
from pathlib import Path

import uvicorn
from dotenv import load_dotenv

from codemap.api.app import create_app
from codemap.core.settings import load_settings

# Load .env BEFORE the factory runs so cached settings see it.
load_dotenv(dotenv_path=Path(".env"))

app = create_app()


def main() -> None:
    """Run the API server locally for development."""
    key = os.getenv("OPENAI_API_KEY", "")
    status = f"✅ Loaded ({key[:8]}...)" if key else "❌ Missing"
    print(f"{'OPENAI_API_KEY':<20} : {status}")

    uvicorn.run(
        "codemap.api.server:app",
        host=os.getenv("CODEMAP_API_HOST", "127.0.0.1"),
        port=int(os.getenv("CODEMAP_API_PORT", "8000")),
        reload=load_settings().is_dev,
        log_level="info",
    )


if __name__ == "__main__":
    main()
