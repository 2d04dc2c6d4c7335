"""Background workers."""
from .pending_payment_worker import start_pending_payment_worker

__all__ = ["start_pending_payment_worker"]
