"""Configuration and settings."""

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


# Paths
PROJECT_ROOT = Path(__file__).resolve().parent.parent
DATA_DIR = PROJECT_ROOT / "data"
OUTPUT_DIR = PROJECT_ROOT / "output"

# Ensure directories exist
DATA_DIR.mkdir(parents=True, exist_ok=True)
OUTPUT_DIR.mkdir(parents=True, exist_ok=True)

# Logging
LOG_DIR = OUTPUT_DIR / "logs"
LOG_FILE = LOG_DIR / "app.jsonl"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
VERBOSE_LOGGING = _flag("VERBOSE_LOGGING", "false")

# Ensure log directory exists
LOG_DIR.mkdir(parents=True, exist_ok=True)

# Azure AD app registration (client credentials, used for Graph)
AZURE_TENANT_ID = os.getenv("AZURE_TENANT_ID", "")
AZURE_CLIENT_ID = os.getenv("AZURE_CLIENT_ID", "")
AZURE_CLIENT_SECRET = os.getenv("AZURE_CLIENT_SECRET", "")

# Microsoft Graph
GRAPH_BASE_URL = os.getenv("GRAPH_BASE_URL", "https://graph.microsoft.com/v1.0").rstrip("/")
GRAPH_SCOPE = os.getenv("GRAPH_SCOPE", "https://graph.microsoft.com/.default")
SHAREPOINT_DOMAIN = os.getenv("SHAREPOINT_DOMAIN", "contoso.sharepoint.com")
SOURCE_TIMEOUT_SECONDS = float(os.getenv("SOURCE_TIMEOUT_SECONDS", "10"))

# UiPath Orchestrator
UIPATH_ENABLED = _flag("UIPATH_ENABLED", "false")
UIPATH_AUTO_RETRY = _flag("UIPATH_AUTO_RETRY", "true")
UIPATH_ORCHESTRATOR_URL = os.getenv("UIPATH_ORCHESTRATOR_URL", "").rstrip("/")
UIPATH_IDENTITY_URL = os.getenv(
    "UIPATH_IDENTITY_URL",
    "https://cloud.uipath.com/identity_/connect/token",
)
UIPATH_TENANT_NAME = os.getenv("UIPATH_TENANT_NAME", "")
UIPATH_CLIENT_ID = os.getenv("UIPATH_CLIENT_ID", "")
UIPATH_CLIENT_SECRET = os.getenv("UIPATH_CLIENT_SECRET", "")
UIPATH_SCOPE = os.getenv("UIPATH_SCOPE", "OR.Queues")
UIPATH_ORGANIZATION_UNIT_ID = os.getenv("UIPATH_ORGANIZATION_UNIT_ID", "")
UIPATH_DEFAULT_QUEUE = os.getenv("UIPATH_DEFAULT_QUEUE", "")
UIPATH_TIMEOUT_SECONDS = float(os.getenv("UIPATH_TIMEOUT_SECONDS", "30"))
UIPATH_RETRY_ATTEMPTS = int(os.getenv("UIPATH_RETRY_ATTEMPTS", "3"))
UIPATH_RETRY_BASE_DELAY = float(os.getenv("UIPATH_RETRY_BASE_DELAY", "2.0"))

# Named Orchestrator environments selectable with an env:<name> clientState token
UIPATH_DEV_TENANT_NAME = os.getenv("UIPATH_DEV_TENANT_NAME", "")
UIPATH_DEV_ORGANIZATION_UNIT_ID = os.getenv("UIPATH_DEV_ORGANIZATION_UNIT_ID", "")
UIPATH_DEV_ORCHESTRATOR_URL = os.getenv("UIPATH_DEV_ORCHESTRATOR_URL", "").rstrip("/")
UIPATH_PROD_TENANT_NAME = os.getenv("UIPATH_PROD_TENANT_NAME", "")
UIPATH_PROD_ORGANIZATION_UNIT_ID = os.getenv("UIPATH_PROD_ORGANIZATION_UNIT_ID", "")
UIPATH_PROD_ORCHESTRATOR_URL = os.getenv("UIPATH_PROD_ORCHESTRATOR_URL", "").rstrip("/")

# Token caching
ENABLE_TOKEN_CACHE = _flag("ENABLE_TOKEN_CACHE", "true")
TOKEN_REFRESH_BUFFER_SECONDS = int(os.getenv("TOKEN_REFRESH_BUFFER_SECONDS", "300"))

# Forwarding
FORWARD_TIMEOUT_SECONDS = float(os.getenv("FORWARD_TIMEOUT_SECONDS", "10"))

# Subscription tracking list (maps subscription id -> clientState when Graph omits it)
TRACKING_SITE_PATH = os.getenv("TRACKING_SITE_PATH", "")
TRACKING_LIST_ID = os.getenv("TRACKING_LIST_ID", "")

# Item snapshots for change detection
STATE_STORE_PATH = Path(os.getenv("STATE_STORE_PATH", str(DATA_DIR / "item_states.json")))
STATE_RETENTION_DAYS = int(os.getenv("STATE_RETENTION_DAYS", "30"))

# COSTCO routing processor
COSTCO_SITE_PATH = os.getenv("COSTCO_SITE_PATH", "")
COSTCO_QUEUE_NAME = os.getenv("COSTCO_QUEUE_NAME", "COSTCO-INLINE-Routing")

# Webhook server
WEBHOOK_PORT = int(os.getenv("WEBHOOK_PORT", "8000"))

# Webhook concurrency (bounded queue + worker pool)
WEBHOOK_QUEUE_MAX = int(os.getenv("WEBHOOK_QUEUE_MAX", "200"))
WEBHOOK_WORKER_COUNT = int(os.getenv("WEBHOOK_WORKER_COUNT", "2"))
