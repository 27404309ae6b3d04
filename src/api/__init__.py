"""
ParkLedger - API Module

FastAPI adapter exposing:
- Session start / stop / pay / active
- Driver and owner balances
- Owner payment policy, location and profile
- Payment verification
"""

from .server import app, create_app

__all__ = ["app", "create_app"]
