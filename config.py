"""
Configuration for the Pulse feed client
"""

import os
import json
import logging
from typing import Dict, Any

logger = logging.getLogger("config")

CONFIG_FILE = "config.json"

# Default configuration
DEFAULT_CONFIG = {
    # Bitquery streaming + HTTP
    "BITQUERY_WS_URL": "wss://streaming.bitquery.io/eap",
    "BITQUERY_HTTP_URL": "https://streaming.bitquery.io/eap",
    "BITQUERY_TOKEN": "",

    # Reconnect policy
    "RECONNECT_BASE_DELAY_SECONDS": 1.0,
    "MAX_RECONNECT_ATTEMPTS": 5,

    # Feeds
    "FEED_MAX_SIZE": 100,
    "INITIAL_FETCH_LIMIT": 50,
    "SUMMARY_INTERVAL_SECONDS": 60,

    # Local cache
    "CACHE_FILE": "pulse_cache.json",
    "CACHE_NAMESPACE": "pulse",
    "CACHE_TTL_SECONDS": 30 * 60,
    "METADATA_CACHE_TTL_SECONDS": 60 * 60,

    # Jupiter
    "JUPITER_API_BASE": "https://quote-api.jup.ag",
    "JUPITER_TOKENS_URL": "https://tokens.jup.ag",
    "DEFAULT_SLIPPAGE_BPS": 500,
    "ROUTE_CACHE_TTL": 10,

    # Prices
    "COINGECKO_PRICE_URL": "https://api.coingecko.com/api/v3/simple/price",

    # System
    "HTTP_TIMEOUT_SECONDS": 10,
    "LOG_LEVEL": "INFO"
}


def load_config(config_file: str = CONFIG_FILE) -> Dict[str, Any]:
    """
    Load the configuration from config.json.
    If the file does not exist, it is created with the default configuration.

    Args:
        config_file: Path of the JSON configuration file

    Returns:
        Configuration dictionary
    """
    if os.environ.get("USE_ENV_CONFIG", "").lower() == "true":
        logger.info("Loading configuration from environment variables")
        config = load_config_from_env()
    else:
        if not os.path.exists(config_file):
            try:
                with open(config_file, "w") as f:
                    json.dump(DEFAULT_CONFIG, f, indent=2)
                logger.info(f"Configuration file created: {config_file}")
            except OSError as e:
                logger.warning(f"Unable to write default configuration: {e}")
            return dict(DEFAULT_CONFIG)

        try:
            with open(config_file, "r") as f:
                config = json.load(f)
            logger.info(f"Configuration loaded from: {config_file}")
        except Exception as e:
            logger.error(f"Error while loading configuration: {e}")
            logger.info("Using default configuration")
            return dict(DEFAULT_CONFIG)

    # Merge missing keys
    for key, value in DEFAULT_CONFIG.items():
        if key not in config:
            config[key] = value

    # Secrets may always come from the environment
    if not config.get("BITQUERY_TOKEN") and os.environ.get("BITQUERY_TOKEN"):
        config["BITQUERY_TOKEN"] = os.environ["BITQUERY_TOKEN"]

    return config


def load_config_from_env() -> Dict[str, Any]:
    """
    Load the configuration from environment variables

    Returns:
        Configuration dictionary
    """
    config = {}

    for key, default_value in DEFAULT_CONFIG.items():
        env_value = os.environ.get(key)

        if env_value is not None:
            try:
                if isinstance(default_value, bool):
                    config[key] = env_value.lower() == "true"
                elif isinstance(default_value, int):
                    config[key] = int(env_value)
                elif isinstance(default_value, float):
                    config[key] = float(env_value)
                else:
                    config[key] = env_value
            except Exception as parse_err:
                logger.warning(f"Unable to parse env variable {key}: {parse_err}. Using default value.")
                config[key] = default_value
        else:
            config[key] = default_value

    return config


def save_config(config: Dict[str, Any], config_file: str = CONFIG_FILE) -> bool:
    """
    Save the configuration to config.json

    Args:
        config: Configuration dictionary
        config_file: Destination path

    Returns:
        True if the save succeeded, False otherwise
    """
    try:
        with open(config_file, "w") as f:
            json.dump(config, f, indent=2)
        logger.info(f"Configuration saved to: {config_file}")
        return True
    except Exception as e:
        logger.error(f"Error while saving configuration: {e}")
        return False
