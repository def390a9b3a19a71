"""Discord front-end for the frolf club platform."""

__version__ = "0.1.0"
