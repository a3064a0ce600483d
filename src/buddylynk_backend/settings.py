import os
import socket
import threading


def _env_bool(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() in ["true", "1", "yes", "on"]


class BackendSettings:
    _instance = None
    _lock = threading.Lock()

    def __init__(self):
        self.DEBUG_MODE = os.environ.get("DEBUG_MODE", "development")

        # Security: Force disable debug info in API responses (overrides DEBUG_MODE)
        self.DISABLE_API_DEBUG_INFO = _env_bool("DISABLE_API_DEBUG_INFO", "false")

        # Identifies this process in logs and in the system:connected frame
        self.SERVER_ID = os.environ.get("SERVER_ID", f"{socket.gethostname()}-{os.getpid()}")

        # "redis" fans out across processes, "local" keeps events in-process
        self.EVENT_BUS_BACKEND = os.environ.get("EVENT_BUS_BACKEND", "redis").lower()

        self.DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./buddylynk.db")
        self.CORS_ORIGINS = [
            origin.strip()
            for origin in os.environ.get("CORS_ORIGINS", "*").split(",")
            if origin.strip()
        ]

        # Session tokens and cached counters
        self.SESSION_TTL = int(os.environ.get("SESSION_TTL", "86400"))
        self.UNREAD_COUNT_TTL = int(os.environ.get("UNREAD_COUNT_TTL", "86400"))

        # WebSocket settings
        self.WS_HEARTBEAT_INTERVAL = float(os.environ.get("WS_HEARTBEAT_INTERVAL", "25"))
        self.WS_HEARTBEAT_TIMEOUT = float(os.environ.get("WS_HEARTBEAT_TIMEOUT", "30"))
        # Per-process presence counts expire unless a heartbeat sweep renews them
        self.WS_PRESENCE_TTL = int(os.environ.get("WS_PRESENCE_TTL", "60"))
        self.WS_SEND_TIMEOUT = float(os.environ.get("WS_SEND_TIMEOUT", "5"))
        self.WS_HANDLER_TIMEOUT = float(os.environ.get("WS_HANDLER_TIMEOUT", "5"))
        self.WS_MAX_CONNECTIONS_PER_USER = int(os.environ.get("WS_MAX_CONNECTIONS_PER_USER", "10"))
        self.WS_MAX_TOTAL_CONNECTIONS = int(os.environ.get("WS_MAX_TOTAL_CONNECTIONS", "10000"))

    def __new__(cls):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super(BackendSettings, cls).__new__(cls)
        return cls._instance

    @property
    def include_debug_info(self) -> bool:
        return (
            self.DEBUG_MODE.lower() in ["dev", "development", "local"]
            and not self.DISABLE_API_DEBUG_INFO
        )

settings = BackendSettings()
