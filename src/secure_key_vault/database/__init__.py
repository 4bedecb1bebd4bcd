"""Database package for Secure Key Vault."""

from secure_key_vault.database.manager import DatabaseManager, db_manager

__all__ = ["DatabaseManager", "db_manager"]
