# market_oracle - resilient market-data client
from market_oracle.config.settings import Config
from market_oracle.data.oracle import MarketDataOracle
from market_oracle.utils.logging import setup_logging

__version__ = "1.4.0"

__all__ = ["Config", "MarketDataOracle", "setup_logging", "__version__"]
