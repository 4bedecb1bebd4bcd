"""Service layer: challenge store, repositories, ceremonies and key administration."""
