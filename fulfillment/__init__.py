"""BTC fulfillment: order lifecycle, gates, payout dispatch and the queue run."""
