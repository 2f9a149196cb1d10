"""
Resource Monitor
================

Memory, CPU and disk gauges used by ParallelProcessor to throttle chunk
admission.

- memory: resident set size of this process, in bytes
- cpu: system-wide CPU utilization as a fraction (0.0 - 1.0)
- disk: utilization of the filesystem holding ``path``, as a fraction
"""

from typing import Dict, Optional
import logging
import os

import psutil

logger = logging.getLogger(__name__)


class ResourceMonitor:
    """Reads resource gauges through psutil; gauge failures read as 0."""

    def __init__(self, path: Optional[str] = None):
        self.path = path or os.getcwd()
        self._process = psutil.Process(os.getpid())

    def memory_usage(self) -> int:
        try:
            return self._process.memory_info().rss
        except psutil.Error as e:
            logger.debug(f"Memory gauge unavailable: {e}")
            return 0

    def cpu_usage(self) -> float:
        try:
            return psutil.cpu_percent(interval=None) / 100.0
        except psutil.Error as e:
            logger.debug(f"CPU gauge unavailable: {e}")
            return 0.0

    def disk_usage(self) -> float:
        try:
            return psutil.disk_usage(self.path).percent / 100.0
        except (psutil.Error, OSError) as e:
            logger.debug(f"Disk gauge unavailable for {self.path}: {e}")
            return 0.0

    def snapshot(self) -> Dict[str, float]:
        return {
            'memory': self.memory_usage(),
            'cpu': self.cpu_usage(),
            'disk': self.disk_usage(),
        }
