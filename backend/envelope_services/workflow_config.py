"""
Envelope Hub - Configuration

All settings come from environment variables. server.py loads a .env file
before importing this module, so values there take effect too.
"""

import os
from typing import Any, Dict, List


# =============================================================================
# DATABASE
# =============================================================================

MONGO_URL = os.environ.get("MONGO_URL", "mongodb://localhost:27017")
DB_NAME = os.environ.get("DB_NAME", "envelope_hub")
ENVELOPES_COLLECTION = os.environ.get("ENVELOPES_COLLECTION", "envelopes")


# =============================================================================
# SERVER
# =============================================================================

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

CORS_ORIGINS: List[str] = [
    origin.strip()
    for origin in os.environ.get("CORS_ORIGINS", "*").split(",")
    if origin.strip()
]


# =============================================================================
# WORKFLOW
# =============================================================================

# Append an entry to the envelope's workflow_history on every transition
WORKFLOW_HISTORY_ENABLED = os.environ.get("WORKFLOW_HISTORY_ENABLED", "true").lower() == "true"


def get_config_status() -> Dict[str, Any]:
    """Effective configuration for the health endpoint. Never includes MONGO_URL."""
    return {
        "db_name": DB_NAME,
        "envelopes_collection": ENVELOPES_COLLECTION,
        "log_level": LOG_LEVEL,
        "workflow_history_enabled": WORKFLOW_HISTORY_ENABLED,
    }
