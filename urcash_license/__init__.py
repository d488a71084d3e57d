"""
License Client for the URCash retail desktop application

This package manages license activation, cached license truth, and
premium feature entitlement for URCash installations. It talks to the
URCash license server and keeps a local cache so the application keeps
working through short offline periods.
"""

__version__ = "1.0.0"
