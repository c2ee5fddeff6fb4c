"""Update distribution server for Building Forge desktop releases."""

__version__ = "0.1.0"
