"""
Entry point for running the voice loop with its status API.

Usage:
    python -m voice_loop

Requires VOICE_LOOP_API_URL. Serves the status API on
VOICE_LOOP_HTTP_HOST:VOICE_LOOP_HTTP_PORT (default 127.0.0.1:8000).
"""
import uvicorn

from logging_setup import setup_logging
from .app import build_loop
from .config import get_config
from .status_api import create_app

if __name__ == "__main__":
    config = get_config()
    setup_logging(level=config.log_level, use_json=True, redact_pii=config.log_redact_pii)

    uvicorn.run(
        create_app(build_loop(config)),
        host=config.http_host,
        port=config.http_port,
        log_level=config.log_level.lower(),
    )
