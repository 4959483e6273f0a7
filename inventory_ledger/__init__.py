"""Treasury BTC inventory: lots, FIFO allocation and reversal."""

from .allocator import (AllocationResult, FifoAllocator, allocate_btc_fifo,
                        plan_fifo_draws, reverse_allocation)
from .ledger import (InventoryStats, btc_to_sats, check_conservation,
                     get_active_wallet, get_inventory_stats, ledger_balance_btc,
                     record_lot, set_active_wallet)

__all__ = [
    "AllocationResult",
    "FifoAllocator",
    "InventoryStats",
    "allocate_btc_fifo",
    "btc_to_sats",
    "check_conservation",
    "get_active_wallet",
    "get_inventory_stats",
    "ledger_balance_btc",
    "plan_fifo_draws",
    "record_lot",
    "reverse_allocation",
    "set_active_wallet",
]
