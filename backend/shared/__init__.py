"""
Shared module for common utilities used by the REST API.

CLEAN ARCHITECTURE STRUCTURE:
- shared.config: Configuration
  - settings.py: Environment config (Pydantic)
  - logging.py: Structured logging
  - constants.py: Order, bill and payment statuses

- shared.infrastructure: Database and request context
  - db.py: SQLAlchemy sessions, UnitOfWork
  - correlation.py: X-Request-ID propagation

- shared.security: Rate limiting
  - rate_limit.py: slowapi limiter

- shared.utils: Utilities
  - exceptions.py: HTTP exceptions with auto-logging
  - schemas.py: Shared Pydantic schemas

IMPORT EXAMPLES:
    from shared.infrastructure.db import get_db, UnitOfWork
    from shared.config.settings import settings
    from shared.config.constants import OrderStatus, PaymentStatus
    from shared.utils.exceptions import NotFoundError, InvalidStateError
"""

# This module provides no re-exports.
# All imports should use the canonical paths as documented above.
