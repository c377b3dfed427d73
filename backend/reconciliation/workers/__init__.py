"""Background processing: the run worker pool and the delivery scheduler."""

from reconciliation.workers.run_worker import ReconciliationWorkerPool, RunTask
from reconciliation.workers.delivery_scheduler import DeliveryScheduler, DeliveryWindow

__all__ = ["ReconciliationWorkerPool", "RunTask", "DeliveryScheduler", "DeliveryWindow"]
