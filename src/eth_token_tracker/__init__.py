"""ERC20 transfer tracker - reorg-aware log ingestion with a paginated query API."""

__version__ = "0.1.0"
