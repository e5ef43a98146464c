"""
Logging configuration

Console output for operators plus daily-rotated files. With log_json the
file sinks write JSON lines that include the context bound by job_logger().
"""
from loguru import logger
import os
import sys
from marketsync.config import get_settings

settings = get_settings()

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>"
)


def setup_logger(log_settings=None):
    """Swap loguru's default handler for the configured sinks"""
    log_settings = log_settings or settings
    logger.remove()

    logger.add(sys.stdout, colorize=True, format=CONSOLE_FORMAT, level=log_settings.log_level)

    if not log_settings.log_to_file:
        return logger

    os.makedirs(log_settings.log_dir, exist_ok=True)

    # Everything from INFO up
    logger.add(
        os.path.join(log_settings.log_dir, "sync_{time:YYYY-MM-DD}.log"),
        rotation="00:00",
        retention=f"{log_settings.log_retention_days} days",
        compression="zip",
        level="INFO",
        serialize=log_settings.log_json,
    )

    # Failed jobs and platform errors
    logger.add(
        os.path.join(log_settings.log_dir, "sync_errors_{time:YYYY-MM-DD}.log"),
        rotation="00:00",
        retention=f"{log_settings.error_log_retention_days} days",
        level="ERROR",
        serialize=log_settings.log_json,
    )

    return logger


def job_logger(job):
    """Logger bound to a queued job's tenant, platform, kind and id"""
    return logger.bind(tenant_id=job.tenant_id, platform=job.platform, kind=job.kind, job_id=job.id)


log = setup_logger()
