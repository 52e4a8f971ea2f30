"""Service-request lifecycle, messaging and notification service for the contractor marketplace."""

__version__ = "0.1.0"
