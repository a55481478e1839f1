"""
ledgersheet - Accounting datasets into spreadsheets

Runs standard reports and read-queries against the accounting service
and writes the results to stable, named locations in a spreadsheet,
on demand or on a recurring schedule.
"""

__version__ = "0.1.0"


__all__ = ["LedgersheetConfig", "load_config", "get_ledgersheet_home"]

from .config import LedgersheetConfig, load_config, get_ledgersheet_home
