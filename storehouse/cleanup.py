import logging
import time
from pathlib import Path
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler

from .config import StorehouseConfig

logger = logging.getLogger("storehouse.cleanup")

CLEANUP_JOB_ID = "storehouse-temp-cleanup"


def cleanup_temp_files(config: StorehouseConfig, now: Optional[float] = None) -> int:
    """Remove staged upload files that outlived ``temp_max_age_minutes``.

    Staged files normally disappear once their request finishes; leftovers
    come from interrupted processes.
    """

    staging_dir = Path(config.staging_dir)
    if not staging_dir.is_dir():
        return 0

    cutoff = (time.time() if now is None else now) - config.temp_max_age_minutes * 60
    removed = 0
    for temp_file in staging_dir.glob("*.tmp"):
        try:
            if temp_file.is_file() and temp_file.stat().st_mtime < cutoff:
                temp_file.unlink()
                removed += 1
                logger.info("temp_file_removed path=%s", temp_file)
        except OSError as error:
            logger.warning(
                "temp_cleanup_failed path=%s error=%s",
                temp_file,
                error,
            )

    return removed


def start_cleanup_scheduler(config: StorehouseConfig) -> BackgroundScheduler:
    scheduler = BackgroundScheduler(daemon=True)
    scheduler.add_job(
        cleanup_temp_files,
        "interval",
        minutes=config.cleanup_interval_minutes,
        args=[config],
        id=CLEANUP_JOB_ID,
        replace_existing=True,
        coalesce=True,
        max_instances=1,
    )
    scheduler.start()
    logger.info(
        "cleanup_scheduler_started interval_minutes=%d staging_dir=%s",
        config.cleanup_interval_minutes,
        config.staging_dir,
    )
    return scheduler
