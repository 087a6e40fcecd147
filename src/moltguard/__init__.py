"""moltguard - untrusted-content validation for messaging gateways."""

__version__ = "0.1.0"
