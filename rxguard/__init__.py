"""rxguard: selective-disclosure prescription credentials and claim fraud scoring."""

__version__ = "0.1.0"
