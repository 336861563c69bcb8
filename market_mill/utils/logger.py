import os
import sys
from pathlib import Path

from loguru import logger

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan> - "
    "<level>{message}</level>"
)

# Message prefixes that belong in the migration audit trail
AUDIT_TAGS = ("[MIGRATE]", "[FORWARD]", "[ADMIN]")


def _is_audit_record(record: dict) -> bool:
    return record["message"].startswith(AUDIT_TAGS)


def setup_logger(*, json_logs: bool = False, level: str = "INFO", log_dir: str = "logs") -> None:
    """Configure loguru for the mill client and tooling.

    Console level comes from LOG_LEVEL (falls back to ``level``). The daily
    file keeps DEBUG; migrations, forwarded calls and config changes also go
    to a separate audit file that is kept longer.
    """
    console_level = os.getenv("LOG_LEVEL", level).upper()
    logger.remove()

    if json_logs:
        logger.add(sys.stdout, serialize=True, level=console_level)
    else:
        logger.add(sys.stdout, format=CONSOLE_FORMAT, level=console_level, colorize=True)

    base = Path(log_dir)
    logger.add(
        base / "market_mill_{time:YYYY-MM-DD}.log",
        rotation="50 MB",
        retention="7 days",
        compression="gz",
        level="DEBUG",
        serialize=json_logs,
    )
    logger.add(
        base / "audit_{time:YYYY-MM}.log",
        rotation="1 month",
        retention="1 year",
        level="INFO",
        filter=_is_audit_record,
        serialize=True,
    )
