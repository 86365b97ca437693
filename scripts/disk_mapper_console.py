"""
Console output and run log for the VM disk mapper.
"""

from datetime import datetime
from typing import Optional


# Color output
class Colors:
    """ANSI color codes for terminal output"""
    RED = '\033[0;31m'
    GREEN = '\033[0;32m'
    YELLOW = '\033[1;33m'
    BLUE = '\033[0;34m'
    NC = '\033[0m'  # No Color


_log_file: Optional[str] = None


def open_log(path: Optional[str]) -> None:
    """Start a fresh run log at path (None disables logging)"""
    global _log_file
    _log_file = None
    if not path:
        return
    try:
        with open(path, "w", encoding="utf-8") as f:
            f.write(f"VM Disk Mapper Log - {datetime.now()}\n")
        _log_file = path
    except (IOError, OSError) as e:
        print(f"{Colors.YELLOW}Warning: Could not create log file: {e}{Colors.NC}")


def log(message: str):
    """Write message to log file if logging is enabled"""
    if _log_file:
        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        try:
            with open(_log_file, "a", encoding="utf-8") as f:
                f.write(f"[{timestamp}] {message}\n")
        except (IOError, OSError):
            pass  # Silently ignore log write failures


def print_message(color: str, message: str):
    """Print colored message and log it"""
    print(f"{color}{message}{Colors.NC}")
    log(message)


def info(message: str):
    print_message(Colors.BLUE, message)


def success(message: str):
    print_message(Colors.GREEN, f"✓ {message}")


def warn(message: str):
    print_message(Colors.YELLOW, f"⚠ {message}")


def error(message: str):
    print_message(Colors.RED, f"ERROR: {message}")


def banner(title: str):
    print_message(Colors.GREEN, "=" * 40)
    print_message(Colors.GREEN, title)
    print_message(Colors.GREEN, "=" * 40)
