import logging
import os
import sys


class ColoredFormatter(logging.Formatter):
    """Custom formatter that adds colors to log output."""

    # ANSI color codes
    grey = "\x1b[38;21m"
    green = "\x1b[32m"
    yellow = "\x1b[33m"
    red = "\x1b[31m"
    bold_red = "\x1b[31;1m"
    orange = "\x1b[38;5;208m"  # Orange color for timestamp
    reset = "\x1b[0m"

    COLORS = {
        logging.DEBUG: grey,
        logging.INFO: green,
        logging.WARNING: yellow,
        logging.ERROR: red,
        logging.CRITICAL: bold_red
    }

    def format(self, record):
        formatted = super().format(record)

        # Only colorize if outputting to terminal
        if sys.stdout.isatty():
            log_color = self.COLORS.get(record.levelno, self.grey)

            # Format is: "timestamp - LEVEL - name - message"
            parts = formatted.split(' - ', 3)
            if len(parts) >= 3:
                timestamp = parts[0]
                level = parts[1]
                rest = ' - '.join(parts[2:])

                colored_timestamp = f"{self.orange}{timestamp}{self.reset}"
                colored_level = f"{log_color}{level}{self.reset}"
                formatted = f"{colored_timestamp} - {colored_level} - {rest}"

        return formatted


def setup_logging():
    """Configure logging with colors and datetime."""
    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(ColoredFormatter(
        '%(asctime)s - %(levelname)-8s - %(name)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    ))

    root.addHandler(handler)
    root.setLevel(logging.WARNING)  # Default to WARNING to avoid verbose logs

    # Route uvicorn through our formatter
    for name in ("uvicorn.access", "uvicorn.error"):
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers = []
        uvicorn_logger.addHandler(handler)
        uvicorn_logger.setLevel(logging.INFO)


def configure_module_logging():
    """
    Configure module log levels from environment variables.

    WEBSOCKET_LOG_LEVEL controls the realtime layer (gateway, bus, presence,
    call relay); everything else in the backend stays at WARNING.
    """
    ws_log_level = os.environ.get("WEBSOCKET_LOG_LEVEL", "WARNING").upper()

    valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
    if ws_log_level not in valid_levels:
        ws_log_level = "WARNING"

    backend_modules = [
        "buddylynk_backend",
        "buddylynk_backend.api",
        "buddylynk_backend.business_logic",
        "buddylynk_backend.auth",
        "buddylynk_backend.database",
    ]
    for module in backend_modules:
        logging.getLogger(module).setLevel(logging.WARNING)

    websocket_modules = [
        "buddylynk_backend.websocket",
        "buddylynk_backend.websocket.router",
        "buddylynk_backend.websocket.gateway",
        "buddylynk_backend.websocket.connection_registry",
        "buddylynk_backend.websocket.pubsub",
        "buddylynk_backend.websocket.presence",
        "buddylynk_backend.websocket.call_relay",
        "buddylynk_backend.websocket.handlers",
        "buddylynk_backend.websocket.auth",
        "buddylynk_backend.websocket.broadcast",
    ]
    for module in websocket_modules:
        logging.getLogger(module).setLevel(getattr(logging, ws_log_level))

    # Suppress access logs in quiet mode
    if ws_log_level in ["ERROR", "CRITICAL"]:
        logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
