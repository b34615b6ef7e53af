from .config import AppConfig, ConfigStore, load_config
from .errors import ArbgateError, ConfigError, FeedError
from .service import ArbitragePipeline

__all__ = ["AppConfig", "ConfigStore", "load_config", "ArbgateError", "ConfigError", "FeedError",
           "ArbitragePipeline"]
