import os

API_KEY = os.getenv("N8N_MONITOR_API_KEY", "n8n-monitor-secret-key")

DATABASE_PATH = os.getenv("N8N_MONITOR_DB_PATH", "n8n_monitor.db")
DATABASE_URL = f"sqlite:///{DATABASE_PATH}"

HOST = os.getenv("N8N_MONITOR_HOST", "127.0.0.1")
PORT = int(os.getenv("N8N_MONITOR_PORT", "8000"))

# Fernet key (urlsafe base64, 32 bytes) used for instance API keys at rest
ENCRYPTION_KEY = os.getenv("N8N_MONITOR_ENCRYPTION_KEY", "")

HTTP_TIMEOUT = float(os.getenv("N8N_MONITOR_HTTP_TIMEOUT", "15.0"))

MONITOR_ENABLED = os.getenv("N8N_MONITOR_MONITOR_ENABLED", "true").lower() in (
    "1",
    "true",
    "yes",
)
MONITOR_INTERVAL = float(os.getenv("N8N_MONITOR_MONITOR_INTERVAL", "120"))

EXECUTION_SYNC_DEFAULT_LIMIT = 100
EXECUTION_SYNC_MAX_LIMIT = 200

# Clamped to the range sync_executions accepts
MONITOR_EXECUTION_LIMIT = max(
    1,
    min(
        int(os.getenv("N8N_MONITOR_EXECUTION_LIMIT", "100")),
        EXECUTION_SYNC_MAX_LIMIT,
    ),
)

APP_URL = os.getenv("N8N_MONITOR_APP_URL", "/")

SMTP_HOST = os.getenv("N8N_MONITOR_SMTP_HOST", "")
SMTP_PORT = int(os.getenv("N8N_MONITOR_SMTP_PORT", "587"))
SMTP_USERNAME = os.getenv("N8N_MONITOR_SMTP_USERNAME", "")
SMTP_PASSWORD = os.getenv("N8N_MONITOR_SMTP_PASSWORD", "")
SMTP_FROM = os.getenv("N8N_MONITOR_SMTP_FROM", "alerts@n8n-monitor.dev")

# Web Push (VAPID). Without a private key, pushes go out as plain JSON POSTs
VAPID_PUBLIC_KEY = os.getenv("N8N_MONITOR_VAPID_PUBLIC_KEY", "")
VAPID_PRIVATE_KEY = os.getenv("N8N_MONITOR_VAPID_PRIVATE_KEY", "")
VAPID_SUBJECT = os.getenv("N8N_MONITOR_VAPID_SUBJECT", "mailto:alerts@n8n-monitor.dev")
