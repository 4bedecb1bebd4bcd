"""Secure Key Vault: custody service for FIDO2 hardware security keys."""

__version__ = "0.1.0"
