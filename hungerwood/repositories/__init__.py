"""
Repository Factory

Provides a single entry point for obtaining the persistence backends.
The rest of the application only sees the abstract repositories.

Usage:
    from hungerwood.repositories import get_repositories

    repos = get_repositories()
    order = await repos.orders.get(order_id)

Environment Switching:
    - ENV_MODE=development → in-memory repositories
    - ENV_MODE=staging / production → SQLAlchemy repositories (PostgreSQL)
"""

import logging
from dataclasses import dataclass
from functools import lru_cache

from hungerwood.core.config import get_settings
from hungerwood.repositories.base import (
    AccountRepository,
    OrderCodeConflict,
    OrderRepository,
    TransactionTotals,
)
from hungerwood.repositories.memory import InMemoryAccountRepository, InMemoryOrderRepository

logger = logging.getLogger(__name__)


@dataclass
class Repositories:
    accounts: AccountRepository
    orders: OrderRepository
    backend: str


def in_memory_repositories() -> Repositories:
    return Repositories(
        accounts=InMemoryAccountRepository(),
        orders=InMemoryOrderRepository(),
        backend="memory",
    )


@lru_cache()
def get_repositories() -> Repositories:
    """
    Get the configured repositories.

    Cached so every service in the process shares one store.
    """
    settings = get_settings()

    if not settings.use_database:
        logger.info("Repositories: Using in-memory storage (development mode)")
        return in_memory_repositories()

    from hungerwood.database import get_session_maker
    from hungerwood.repositories.sql import SqlAccountRepository, SqlOrderRepository

    logger.info(f"Repositories: Using SQLAlchemy storage ({settings.env_mode.value} mode)")
    session_maker = get_session_maker()
    return Repositories(
        accounts=SqlAccountRepository(session_maker),
        orders=SqlOrderRepository(session_maker),
        backend="database",
    )


def reset_repositories() -> None:
    """Clear the cached repositories; the next call builds fresh ones."""
    get_repositories.cache_clear()
    logger.debug("Repository cache cleared")


__all__ = [
    "AccountRepository",
    "OrderCodeConflict",
    "OrderRepository",
    "Repositories",
    "TransactionTotals",
    "get_repositories",
    "in_memory_repositories",
    "reset_repositories",
]
