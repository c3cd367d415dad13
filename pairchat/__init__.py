"""pairchat: token-bootstrapped two-party chat sessions."""

__version__ = "0.1.0"
