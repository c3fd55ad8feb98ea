"""SalesPilot: multi-stage sales outreach orchestration."""

__version__ = "0.1.0"
