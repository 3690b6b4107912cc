"""Camera frame relay hub with a quota-bounded picture archive."""

__version__ = "0.1.0"
