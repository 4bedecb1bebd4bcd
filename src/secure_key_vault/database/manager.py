"""MongoDB connection manager for Secure Key Vault."""

import asyncio
import time
from typing import Any, Dict, Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorCollection, AsyncIOMotorDatabase
from pymongo.errors import ConnectionFailure, PyMongoError, ServerSelectionTimeoutError

from secure_key_vault.config import settings
from secure_key_vault.managers.logging_manager import get_logger

db_logger = get_logger(prefix="[DATABASE]")
perf_logger = get_logger(prefix="[DB_PERFORMANCE]")
health_logger = get_logger(prefix="[DB_HEALTH]")


class DatabaseManager:
    """MongoDB database manager using Motor (async MongoDB driver)"""

    def __init__(self):
        self.client: Optional[AsyncIOMotorClient] = None
        self.database: Optional[AsyncIOMotorDatabase] = None
        self._connection_retries = 3

    def _connection_string(self) -> str:
        if settings.MONGODB_USERNAME and settings.MONGODB_PASSWORD:
            password = settings.MONGODB_PASSWORD.get_secret_value()
            db_logger.debug("Using authenticated connection to MongoDB")
            return f"mongodb://{settings.MONGODB_USERNAME}:{password}@{settings.MONGODB_URL.replace('mongodb://', '')}"
        return settings.MONGODB_URL

    async def connect(self):
        """Connect to MongoDB with retry logic"""
        start_time = time.time()
        db_logger.info("Starting MongoDB connection process")

        for attempt in range(self._connection_retries):
            try:
                db_logger.info("Connection attempt %d/%d to MongoDB", attempt + 1, self._connection_retries)
                self.client = AsyncIOMotorClient(
                    self._connection_string(),
                    serverSelectionTimeoutMS=settings.MONGODB_SERVER_SELECTION_TIMEOUT,
                    connectTimeoutMS=settings.MONGODB_CONNECTION_TIMEOUT,
                    maxPoolSize=50,
                    minPoolSize=5,
                    tz_aware=True,
                )
                self.database = self.client[settings.MONGODB_DATABASE]

                ping_start = time.time()
                await self.client.admin.command("ping")
                ping_duration = time.time() - ping_start

                perf_logger.info(
                    "MongoDB connection established in %.3fs (ping: %.3fs)", time.time() - start_time, ping_duration
                )
                db_logger.info("Connected to MongoDB database: %s", settings.MONGODB_DATABASE)
                return

            except (ServerSelectionTimeoutError, ConnectionFailure) as e:
                db_logger.warning(
                    "Failed to connect to MongoDB (attempt %d/%d): %s", attempt + 1, self._connection_retries, e
                )
                if attempt == self._connection_retries - 1:
                    db_logger.error("All connection attempts failed after %.3fs", time.time() - start_time)
                    raise

                backoff_time = 2**attempt
                db_logger.info("Waiting %.1fs before retry (exponential backoff)", backoff_time)
                await asyncio.sleep(backoff_time)

    async def disconnect(self):
        """Disconnect from MongoDB"""
        if self.client:
            self.client.close()
            self.client = None
            self.database = None
            db_logger.info("Successfully disconnected from MongoDB")
        else:
            db_logger.warning("Disconnect called but no active MongoDB connection found")

    async def health_check(self) -> bool:
        """Check database connection health"""
        if self.client is None:
            health_logger.warning("Health check failed: No database client available")
            return False
        try:
            await self.client.admin.command("ping")
            return True
        except PyMongoError as e:
            health_logger.error("Database health check failed: %s", e)
            return False

    def get_collection(self, collection_name: str) -> AsyncIOMotorCollection:
        """Get a collection from the database"""
        if self.database is None:
            db_logger.error("Cannot get collection '%s': Database not connected", collection_name)
            raise RuntimeError("Database not connected")
        return self.database[collection_name]

    async def create_indexes(self):
        """
        Create the indexes the key custody invariants rely on.

        The unique serial/credential indexes and the partial unique index on
        active assignments are required: failing to create them aborts startup.
        """
        start_time = time.time()
        db_logger.info("Starting database index creation process")

        keys = self.get_collection(settings.CREDENTIALS_COLLECTION)
        await self._create_index_if_not_exists(keys, "serial_number", {"unique": True}, required=True)
        await self._create_index_if_not_exists(keys, "credential_id", {"unique": True}, required=True)
        await self._create_index_if_not_exists(keys, [("status", 1), ("created_at", -1)], {})
        await self._create_index_if_not_exists(keys, "current_assignment_id", {"sparse": True})

        assignments = self.get_collection(settings.ASSIGNMENTS_COLLECTION)
        await self._create_index_if_not_exists(
            assignments,
            "key_id",
            {
                "unique": True,
                "name": "one_active_assignment_per_key",
                "partialFilterExpression": {"status": "active"},
            },
            required=True,
        )
        await self._create_index_if_not_exists(assignments, [("user_id", 1), ("status", 1)], {})
        await self._create_index_if_not_exists(assignments, [("key_id", 1), ("assigned_at", -1)], {})

        audit = self.get_collection(settings.AUDIT_LOG_COLLECTION)
        await self._create_index_if_not_exists(audit, [("timestamp", -1)], {})
        await self._create_index_if_not_exists(audit, [("action", 1), ("timestamp", -1)], {})
        await self._create_index_if_not_exists(audit, "resource_id", {})

        users = self.get_collection(settings.USERS_COLLECTION)
        await self._create_index_if_not_exists(users, "email", {"unique": True, "sparse": True})

        perf_logger.info("Database index creation completed in %.3fs", time.time() - start_time)

    async def _create_index_if_not_exists(
        self, collection: AsyncIOMotorCollection, field_spec: Any, options: Dict[str, Any], required: bool = False
    ):
        """Create an index if it doesn't already exist"""
        try:
            await collection.create_index(field_spec, **options)
            db_logger.debug("Successfully created/ensured index: %s", field_spec)
        except PyMongoError as e:
            if required:
                db_logger.error("Could not create required index '%s': %s", field_spec, e)
                raise
            db_logger.warning("Could not create/ensure index '%s': %s", field_spec, e)


# Global database manager instance
db_manager = DatabaseManager()
