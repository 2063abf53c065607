"""Central registry for SQLAlchemy models with string-based relationships.

Importing this module loads all ORM classes that may be referenced by string to
avoid mapper configuration errors when individual models are imported in
isolation (for example from the jobs process or Alembic).
"""

from app.domain.customers import db_models as customer_db_models  # noqa: F401
from app.domain.orders import db_models as order_db_models  # noqa: F401
from app.domain.payments import db_models as payment_db_models  # noqa: F401
