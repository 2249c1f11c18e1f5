"""Camera line-following navigation for the laundry delivery robot."""

__version__ = '0.1.0'
