"""bugdesk -- bug tracker backend with spreadsheet bulk import."""

__version__ = "0.3.0"
