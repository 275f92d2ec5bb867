"""
                HungerWood Order Core

Order lifecycle, wallet/referral ledger and real-time order status
distribution for the HungerWood restaurant ordering backend.

Version: 1.0.0
License: MIT
"""

__version__ = "1.0.0"
