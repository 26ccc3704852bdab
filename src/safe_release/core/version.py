"""Version information for Safe Release."""

__version__ = "1.0.0"
