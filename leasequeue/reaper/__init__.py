"""
Reaper module.
Contains the lease reaper for recovering expired jobs.
"""

from leasequeue.reaper.main import Reaper, run

__all__ = ["Reaper", "run"]
