from .connection import get_db, engine, AsyncSessionLocal, init_db, Base

# Import reconciliation models to ensure they are registered with Base
from .recon_models import (
    SupplierConfigDB, ReconciliationRunDB, TransactionMatchDB, AuditEventDB
)

__all__ = [
    'get_db', 'engine', 'AsyncSessionLocal', 'init_db', 'Base',
    # Reconciliation models
    'SupplierConfigDB', 'ReconciliationRunDB', 'TransactionMatchDB', 'AuditEventDB',
]
