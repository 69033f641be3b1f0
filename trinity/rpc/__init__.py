"""
Trinity HTTP API

  - create_app: coordinator API
  - create_validator_app: stub validator proof endpoint for local runs
"""

from .server import ERROR_STATUS, create_app, create_validator_app, status_for

__all__ = ["ERROR_STATUS", "create_app", "create_validator_app", "status_for"]
