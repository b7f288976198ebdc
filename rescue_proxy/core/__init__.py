from .pending import PendingSaveRegistry
from .reconciler import Reconciler, is_test_message

__all__ = ["PendingSaveRegistry", "Reconciler", "is_test_message"]
