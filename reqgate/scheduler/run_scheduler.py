from __future__ import annotations
import os
import time
from typing import Callable, Optional

import structlog
import yaml
from apscheduler.schedulers.background import BackgroundScheduler

from ..config import SETTINGS
from ..logging_conf import configure_logging

log = structlog.get_logger()


def parse_dur(s: str) -> int:
    s = (s or "").strip().lower()
    if s.endswith("ms"): return max(1, int(float(s[:-2]) / 1000))
    if s.endswith("s"):  return int(float(s[:-1]))
    if s.endswith("m"):  return int(float(s[:-1]) * 60)
    if s.endswith("h"):  return int(float(s[:-1]) * 3600)
    return int(s or 0)


def _load_yaml(path: str) -> dict:
    if not os.path.exists(path):
        return {}
    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _guarded(name: str, fn: Callable[[], int]) -> Callable[[], None]:
    def _inner():
        if os.path.exists(SETTINGS.kill_file):
            log.warning("Kill switch engaged; skipping run", job=name)
            return
        try:
            n = fn()
            log.info("job_ok", job=name, result=n)
        except Exception as e:
            # keep the scheduler alive; the next tick retries
            log.warning("job_fail", job=name, error=str(e))
    return _inner


def build_scheduler(
    purge_blocks: Callable[[], int],
    clean_logs: Optional[Callable[[], int]] = None,
    cfg: Optional[dict] = None,
) -> BackgroundScheduler:
    cfg = cfg or {}
    block_every = parse_dur(str(cfg.get("purge_blocks_every", "5m"))) or 300
    logs_every = parse_dur(str(cfg.get("clean_logs_every", "24h"))) or 86400

    sched = BackgroundScheduler()
    sched.add_job(
        _guarded("purge_blocks", purge_blocks), "interval",
        seconds=block_every, id="purge_blocks", max_instances=1, coalesce=True,
    )
    log.info("scheduled", job="purge_blocks", every_seconds=block_every)
    if clean_logs is not None:
        sched.add_job(
            _guarded("clean_logs", clean_logs), "interval",
            seconds=logs_every, id="clean_logs", max_instances=1, coalesce=True,
        )
        log.info("scheduled", job="clean_logs", every_seconds=logs_every)
    return sched


def main(config_path: str = "maintenance.yaml"):
    from ..audit import default_sink
    from ..pipeline import build_pipeline

    configure_logging()
    if os.path.exists(SETTINGS.kill_file):
        log.warning("Kill switch present; exiting", file=SETTINGS.kill_file)
        return

    cfg = _load_yaml(config_path)
    pipeline = build_pipeline()
    clean_logs = None
    if SETTINGS.log_retention_days:
        sink = default_sink()
        clean_logs = lambda: sink.purge_older_than(SETTINGS.log_retention_days)  # noqa: E731

    sched = build_scheduler(pipeline.purge_expired_blocks, clean_logs, cfg)
    sched.start()
    log.info("scheduler_started")
    try:
        while True:
            time.sleep(1)
            if os.path.exists(SETTINGS.kill_file):
                log.warning("Kill switch engaged; shutting down")
                break
    finally:
        sched.shutdown(wait=False)
        log.info("scheduler_stopped")


if __name__ == "__main__":
    main()
