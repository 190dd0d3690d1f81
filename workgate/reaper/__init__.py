"""
Reaper module.
Contains the lease reaper for recovering stalled jobs.
"""

from workgate.reaper.main import Reaper, run

__all__ = ["Reaper", "run"]
