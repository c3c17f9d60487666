"""Request logging for the chat gateway.

Every /api/chat call ends in exactly one JSON line on the "gateway" logger:
who asked (client IP), which strategy, provider and model served it, token
usage, and the outcome label used by the error mapping. Upstream error
detail is logged here and never returned to the browser.
"""

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger("gateway")


def setup_logging(log_file: str) -> None:
    """Configure the gateway logger with stdout and file handlers.

    Args:
        log_file: Path to the append-only log file.
    """
    logger.setLevel(logging.INFO)

    if not logger.handlers:
        stdout_handler = logging.StreamHandler()
        stdout_handler.setLevel(logging.INFO)
        stdout_fmt = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S",
        )
        stdout_handler.setFormatter(stdout_fmt)
        logger.addHandler(stdout_handler)

        # File handler (append-only)
        log_path = Path(log_file)
        os.makedirs(log_path.parent, exist_ok=True)
        file_handler = logging.FileHandler(log_path, mode="a")
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(stdout_fmt)
        logger.addHandler(file_handler)


def log_request(
    *,
    client_ip: str,
    outcome: str,
    request_id: str,
    strategy: Optional[str] = None,
    provider: Optional[str] = None,
    model: Optional[str] = None,
    stream: bool = False,
    usage: Optional[Dict[str, Any]] = None,
    error: Optional[str] = None,
) -> None:
    """Log a single request event as one JSON line.

    Args:
        client_ip: The caller identity used for rate limiting.
        outcome: Short outcome label (e.g. "success", "rate_limited").
        request_id: Gateway-assigned request ID.
        strategy: The active provider selection strategy.
        provider: The selected provider (None if selection never ran).
        model: The model sent to the provider.
        stream: Whether the caller asked for a streamed response.
        usage: Token usage dict if available.
        error: Internal error detail. Never sent to the caller.
    """
    record: Dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "request_id": request_id,
        "client_ip": client_ip,
        "strategy": strategy,
        "provider": provider,
        "model": model,
        "stream": stream,
        "outcome": outcome,
    }

    if usage:
        record["usage"] = usage

    if error:
        record["error"] = error

    if outcome == "success":
        logger.info(json.dumps(record))
    else:
        logger.warning(json.dumps(record))
