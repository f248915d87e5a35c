"""Race candidate models across resamples and keep the winner."""

__version__ = "0.1.0"
