"""
Reaper module.
Contains the maintenance process that trims streams and purges stale records.
"""

from jobforge.reaper.main import Reaper, run

__all__ = ["Reaper", "run"]
