import os
import logging
from dotenv import load_dotenv
import sys
import inspect

# Determine the path to the .env file (assuming it's in the project root)
# If the module is imported from src/, the root is one level up.
project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
dotenv_path = os.path.join(project_root, '.env')

logger = logging.getLogger(__name__)
logger.setLevel(logging.DEBUG)

# Load environment variables from .env file if it exists
_dotenv_loaded = False
if os.path.exists(dotenv_path):
    load_dotenv(dotenv_path=dotenv_path, override=True)  # .env takes precedence over existing env vars
    _dotenv_loaded = True

# --- Logging ---
LOG_LEVEL_STR = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_LEVEL = getattr(logging, LOG_LEVEL_STR, logging.INFO)
LOG_FORMAT = '%(asctime)s - %(name)-10s : %(lineno)3s - %(levelname)-5s - %(message)s'
LOG_DIR = os.getenv("LOG_DIR", os.path.join(project_root, 'log'))

logging.basicConfig(
    format=LOG_FORMAT,
    level=LOG_LEVEL
)
if logging.getLogger().handlers:
    logging.getLogger().handlers[0].setLevel(LOG_LEVEL)  # Explicitly set the root handler level

if not _dotenv_loaded:
    logger.warning(f".env file not found at {dotenv_path}. Using system environment variables or defaults.")

# Set up optional rotating file handlers for debug and info logs
DEBUG_LOG_FILE = os.getenv("DEBUG_LOG_FILE", 'debug.log')
INFO_LOG_FILE = os.getenv("INFO_LOG_FILE", 'info.log')

# Check if LOG_DIR exists and is writable
if os.path.exists(LOG_DIR) and os.access(LOG_DIR, os.W_OK):
    try:
        from logging.handlers import RotatingFileHandler
        for log_file, level in ((DEBUG_LOG_FILE, logging.DEBUG), (INFO_LOG_FILE, logging.INFO)):
            if not log_file or not log_file.strip():
                continue
            log_path = os.path.join(LOG_DIR, log_file)
            handler = RotatingFileHandler(
                log_path,
                maxBytes=10 * 1024 * 1024,  # 10 MB
                backupCount=5,
                encoding='utf-8'
            )
            handler.setLevel(level)
            handler.setFormatter(logging.Formatter(LOG_FORMAT))
            logging.getLogger().addHandler(handler)
            logger.debug(f"Log file handler initialized: {log_path}")
    except OSError as e:
        logger.error(f"Failed to initialize log file handlers: {str(e)}")
else:
    logger.debug(f"Log directory {LOG_DIR} does not exist or is not writable. File logging disabled.")

# --- Stream queues ---
STREAM_QUEUE_BACKEND = os.getenv("STREAM_QUEUE_BACKEND", "memory").strip().lower()  # memory | redis
STREAM_QUEUE_TTL = int(os.getenv("STREAM_QUEUE_TTL", "300"))  # seconds
STREAM_QUEUE_COMPRESS = os.getenv("STREAM_QUEUE_COMPRESS", "true").lower() == "true"

# Live-tail keeps draining for this long after a terminal control event
STREAM_GRACE_DELAY = float(os.getenv("STREAM_GRACE_DELAY", "0.3"))  # seconds
# Removed handles stay in the registry this long before they are dropped
QUEUE_REMOVE_DELAY = float(os.getenv("QUEUE_REMOVE_DELAY", "0.5"))  # seconds
QUEUE_CLEANUP_INTERVAL = int(os.getenv("QUEUE_CLEANUP_INTERVAL", "60"))  # seconds

QUEUE_KEY_PREFIX = os.getenv("QUEUE_KEY_PREFIX", "queue:")
CHANNEL_KEY_PREFIX = os.getenv("CHANNEL_KEY_PREFIX", "channel:")

# --- Redis ---
REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", "6379"))
REDIS_DB = int(os.getenv("REDIS_DB", "0"))
REDIS_USERNAME = os.getenv("REDIS_USERNAME") or None
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD") or None
REDIS_URL = os.getenv("REDIS_URL", f"redis://{REDIS_HOST}:{REDIS_PORT}/{REDIS_DB}")

# Redis Connection Pool Configuration
REDIS_MAX_CONNECTIONS = int(os.getenv("REDIS_MAX_CONNECTIONS", "20"))  # Pool size
# Connection-level retries inside the client; queue operations never retry on their own
REDIS_RETRY_ATTEMPTS = int(os.getenv("REDIS_RETRY_ATTEMPTS", "0"))
REDIS_SOCKET_TIMEOUT = float(os.getenv("REDIS_SOCKET_TIMEOUT", "5.0"))  # seconds
REDIS_SOCKET_CONNECT_TIMEOUT = float(os.getenv("REDIS_SOCKET_CONNECT_TIMEOUT", "5.0"))  # seconds
REDIS_HEALTH_CHECK_INTERVAL = int(os.getenv("REDIS_HEALTH_CHECK_INTERVAL", "30"))  # seconds

VERSION = os.getenv("VERSION", "0.1.0")

logger.info("Configuration loaded.")


def print_config():
    config_vars = {}
    for name, value in inspect.getmembers(sys.modules[__name__]):
        if name.isupper():  # Check if the name is in uppercase (convention for constants)
            config_vars[name] = value

    # Sort the variables alphabetically by name
    sorted_config_vars = dict(sorted(config_vars.items()))

    for name, value in sorted_config_vars.items():
        if name == "REDIS_PASSWORD" and value:
            value = "***"
        logger.debug(f"{name} = {value}")
