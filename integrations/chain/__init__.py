"""Public chain data integrations (Bitcoin explorer, Ethereum JSON-RPC)."""
import os
from typing import Final

ESPLORA_BASE_URL: Final[str] = os.getenv("ESPLORA_BASE_URL", "https://blockstream.info/api")
ALCHEMY_RPC_URL: Final[str] = os.getenv("ALCHEMY_RPC_URL", "https://eth-mainnet.g.alchemy.com/v2")
# Circle USDC on Ethereum mainnet
USDC_CONTRACT: Final[str] = os.getenv(
    "USDC_CONTRACT", "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48"
)
