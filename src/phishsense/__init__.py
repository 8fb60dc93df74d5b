"""PhishSense - multi-engine phishing risk scoring for email."""

__version__ = "0.1.0"
