import logging
import os
import sys
from logging.handlers import RotatingFileHandler


class ColoredFormatter(logging.Formatter):
    """Console formatter that colors level names and component tags"""

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"
    BOLD = "\033[1m"

    TAG_COLORS = {
        "[CRON]": "\033[34m",  # Blue
        "[LINK]": "\033[96m",  # Light cyan
        "[POLL]": "\033[94m",  # Light blue
        "[SINK]": "\033[95m",  # Light magenta
        "[QUEUE]": "\033[93m",  # Light yellow
    }

    def format(self, record):
        log_message = super().format(record)

        levelname = record.levelname
        if levelname in self.COLORS:
            colored_levelname = (
                f"{self.COLORS[levelname]}{self.BOLD}{levelname}{self.RESET}"
            )
            log_message = log_message.replace(levelname, colored_levelname, 1)

        for tag, color in self.TAG_COLORS.items():
            if tag in log_message:
                log_message = log_message.replace(tag, f"{color}{tag}{self.RESET}")

        return log_message


def get_user_log_dir():
    """Get user-writable directory for log files"""
    if os.name == "nt":
        appdata = os.getenv("LOCALAPPDATA") or os.getenv("APPDATA")
        base = appdata if appdata else os.path.expanduser("~")
        log_dir = os.path.join(base, "PunchRelay")
    else:
        log_dir = os.path.join(
            os.path.expanduser("~"), ".local", "share", "punch-relay"
        )
        if not os.access(os.path.dirname(os.path.dirname(log_dir)), os.W_OK):
            log_dir = "/tmp/punch-relay"

    log_dir = os.getenv("LOG_DIR", log_dir)

    try:
        os.makedirs(log_dir, exist_ok=True)
    except (OSError, PermissionError):
        # Last resort - current directory
        log_dir = os.getcwd()

    return log_dir


def create_log_handler():
    """Create rotating file handler for logging"""
    log_file_size = int(os.getenv("LOG_FILE_SIZE", 10485760))

    log_file_path = os.path.join(get_user_log_dir(), "punch-relay.log")
    handler = RotatingFileHandler(log_file_path, maxBytes=log_file_size, backupCount=3)
    handler.setFormatter(
        logging.Formatter("[%(asctime)s] %(levelname)s in %(module)s: %(message)s")
    )
    return handler


def create_console_handler():
    """Create console handler with colored output"""
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(
        ColoredFormatter(
            "%(asctime)s - %(threadName)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    return console_handler


app_logger = logging.getLogger("punch_relay")

# Module reloads must not stack duplicate handlers
if not app_logger.handlers:
    try:
        app_logger.addHandler(create_log_handler())
    except OSError as e:
        sys.stderr.write(f"File logging disabled: {e}\n")
    app_logger.addHandler(create_console_handler())

app_logger.setLevel(os.getenv("LOG_LEVEL", "INFO").upper())

# Prevent propagation to root logger (which might cause duplicates)
app_logger.propagate = False
