"""forge: donation reconciliation and the reward ledger.

Two payment legs, one donation, one reward. Everything else is presentation.

- sunshines: raw contribution weight.
- stars: sunshines / 180.
"""

from __future__ import annotations

__all__ = [
    "__version__",
    "SUNSHINES_PER_STAR",
]

__version__ = "0.3.0"

# One star is forged from 180 sunshines.
SUNSHINES_PER_STAR = 180
