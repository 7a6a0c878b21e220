"""Background workers for async processing."""
from .settlement_recovery import run_settlement_recovery, start_settlement_recovery_worker

__all__ = ["run_settlement_recovery", "start_settlement_recovery_worker"]
