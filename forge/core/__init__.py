"""forge.core

Core primitives.

If a module needs to exist, it should probably depend only on this package.
"""

from .config import Config
from .database import Database
from .events import EventType, InitiateLeg, LegType, ProcessorLeg
from .exceptions import SolarForgeError
from .models import Donation, DonationStatus
from .time import parse_dt, utc_now

__all__ = [
    "Config",
    "Database",
    "Donation",
    "DonationStatus",
    "EventType",
    "InitiateLeg",
    "LegType",
    "ProcessorLeg",
    "SolarForgeError",
    "utc_now",
    "parse_dt",
]
