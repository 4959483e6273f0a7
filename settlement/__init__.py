"""Settlement: USDC payment verification, BTC chain monitoring, balance reconciliation."""
