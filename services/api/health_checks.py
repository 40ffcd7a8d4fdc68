#!/usr/bin/env python3
"""
Health checks for the pool API: event log reachability, oracle liveness, host stats.
"""
import sqlite3
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import psutil

from services.api.logging_config import get_logger

logger = get_logger("api.health")

API_START_TIME = time.time()

# A settlement request older than this is reported; nothing retries it.
STUCK_AFTER_SECONDS = 15 * 60


async def check_eventlog_health(db_path: Path) -> Dict[str, Any]:
    """
    Check the SQLite event log answers a trivial query.

    Returns:
        dict with status, response_time_ms, and error (if any)
    """
    try:
        start = time.time()
        with sqlite3.connect(db_path) as cx:
            cx.execute("SELECT 1").fetchone()
        return {
            "status": "healthy",
            "response_time_ms": round((time.time() - start) * 1000, 2),
        }
    except sqlite3.Error as e:
        logger.error(f"Event log health check failed: {e}")
        return {"status": "unhealthy", "error": str(e)}


def check_oracle_liveness(outstanding: list, stuck_after: int = STUCK_AFTER_SECONDS) -> Dict[str, Any]:
    """
    Report decryption requests the coprocessor has not answered.

    A pool whose request never comes back keeps its funds locked; this only
    surfaces that, it does not time the request out.
    """
    stuck = [r for r in outstanding if r["age_seconds"] >= stuck_after]
    if stuck:
        logger.warning(f"{len(stuck)} settlement request(s) unanswered for >= {stuck_after}s")
    return {
        "status": "degraded" if stuck else "healthy",
        "outstanding": len(outstanding),
        "stuck": stuck,
    }


def get_system_metrics() -> Dict[str, Any]:
    memory = psutil.virtual_memory()
    disk = psutil.disk_usage("/")
    return {
        "cpu": {"usage_percent": round(psutil.cpu_percent(interval=None), 2)},
        "memory": {
            "usage_percent": round(memory.percent, 2),
            "used_mb": round(memory.used / (1024 * 1024), 2),
        },
        "disk": {"usage_percent": round(disk.percent, 2)},
    }


def get_uptime() -> Dict[str, Any]:
    uptime_seconds = time.time() - API_START_TIME
    minutes, hours = uptime_seconds / 60, uptime_seconds / 3600
    if hours >= 24:
        uptime_str = f"{int(hours // 24)}d {int(hours % 24)}h"
    elif hours >= 1:
        uptime_str = f"{int(hours)}h {int(minutes % 60)}m"
    else:
        uptime_str = f"{int(minutes)}m {int(uptime_seconds % 60)}s"
    return {"uptime_seconds": round(uptime_seconds, 2), "uptime_formatted": uptime_str}


async def comprehensive_health_check(
    db_path: Path,
    outstanding: list,
    stuck_after: Optional[int] = None,
) -> Dict[str, Any]:
    checks = {
        "eventlog": await check_eventlog_health(db_path),
        "oracle": check_oracle_liveness(outstanding, stuck_after or STUCK_AFTER_SECONDS),
        "system": get_system_metrics(),
        "uptime": get_uptime(),
    }
    statuses = [checks["eventlog"]["status"], checks["oracle"]["status"]]
    if "unhealthy" in statuses:
        overall = "unhealthy"
    elif "degraded" in statuses:
        overall = "degraded"
    else:
        overall = "healthy"
    return {
        "status": overall,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": checks,
    }
