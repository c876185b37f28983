"""
Core utilities and configuration for the establishment directory backend.

This package provides foundational components used throughout the service:

Modules:
    config: Application configuration and environment variable management
    database: Database connection and session management
    exceptions: Custom exception hierarchy for error handling
    logging: Logging configuration and utilities
    security: Daily-rotating admin token generation and verification

Usage:
    from core.config import settings
    from core.database import get_session
    from core.exceptions import SheetExtractionError, NetworkError
    from core.logging import setup_logging
    from core.security import require_admin_token

Example:
    # Initialize logging
    setup_logging()

    # Get database session
    async with async_session_maker() as session:
        # Perform database operations
        pass
"""

__all__ = [
    "settings",
    "get_session",
    "setup_logging",
    "generate_admin_token",
    "verify_admin_token",
    # Exceptions
    "MigrationException",
    "ExtractionError",
    "SheetExtractionError",
    "NetworkError",
    "RateLimitError",
    "MalformedResponseError",
    "AuthenticationError",
    "ResourceNotFoundError",
    "TransformationError",
    "ValidationError",
    "CoordinateRangeError",
    "MissingKeyError",
    "LoadError",
    "DatabaseError",
    "UpsertError",
    "SchemaEvolutionError",
    "CheckpointError",
    "BatchCallError",
    "InvalidTransitionError",
    "RetryableError",
    "NonRetryableError",
    "AdminAuthError",
]
