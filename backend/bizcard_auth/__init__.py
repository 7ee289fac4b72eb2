"""Federated identity bridge: LINE, Google and Apple logins to backend sessions."""

__version__ = "1.0.0"
