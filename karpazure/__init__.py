"""Node claim controllers, an in-memory cluster store and in-memory Azure API fakes."""

__version__ = "0.1.0"