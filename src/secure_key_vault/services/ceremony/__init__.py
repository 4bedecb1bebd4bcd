"""FIDO2 registration and authentication ceremonies."""
