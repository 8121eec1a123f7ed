"""
Router dependencies shared by the ordering and payment endpoints.
"""

from fastapi import Depends
from sqlalchemy.orm import Session

from shared.infrastructure.db import UnitOfWork, get_db
from rest_api.services.payments.providers import ProviderRegistry, get_provider_registry


def get_uow(db: Session = Depends(get_db)) -> UnitOfWork:
    """Unit of work bound to the request's session."""
    return UnitOfWork(db)


def get_providers() -> ProviderRegistry:
    return get_provider_registry()
