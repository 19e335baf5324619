"""Background engine for spreadsheet evaluation and cleaning tasks."""

__version__ = "0.1.0"
