# services/pools/constants.py
# Bounds surfaced at the engine boundary. Amounts are integer base units (wei).

MIN_ENTRY_FEE: int = 500_000_000_000_000  # 0.0005 ETH
MIN_DURATION: int = 300                   # 5 minutes
MAX_DURATION: int = 2_592_000             # 30 days

MIN_WEIGHT: int = 1
MAX_WEIGHT: int = 1000

MAX_FEE_PERCENTAGE: int = 20

POOL_ID_MAX_LEN: int = 64
CHOICE_COUNT: int = 3
