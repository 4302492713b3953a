"""
gateway_logging.py: logging setup and the structured audit trail.

Audit entries are JSON lines emitted on the ``gateway-audit`` logger. Tokens
and credentials are never written; use ``fingerprint()`` when an entry needs
to correlate a token across requests.
"""

import hashlib
import json
import logging
import time
from pathlib import Path
from typing import Any

audit_logger = logging.getLogger("gateway-audit")


def audit(event: str, **kwargs: Any) -> None:
    """Emit a structured JSON audit log entry."""
    entry = {"ts": time.time(), "event": event, **kwargs}
    audit_logger.info(json.dumps(entry, default=str))


def fingerprint(token: str) -> str:
    """Short, non-reversible identifier for a token."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()[:12]


def configure_logging(level: int = logging.INFO,
                      audit_log_path: Path | None = None) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )
    if audit_log_path is None:
        return

    audit_log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(audit_log_path)
    handler.setFormatter(logging.Formatter("%(message)s"))
    audit_logger.addHandler(handler)
    audit_logger.setLevel(logging.INFO)
    audit_logger.propagate = False
