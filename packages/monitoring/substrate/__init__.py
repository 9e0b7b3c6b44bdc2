import os
import time
from dataclasses import dataclass
from functools import wraps
from enum import Enum
from dotenv import load_dotenv
from loguru import logger

from packages.monitoring.base.decimal_utils import get_network_token_decimals


class Network(Enum):
    MOONBEAM = "moonbeam"
    MOONRIVER = "moonriver"
    MOONBASE_ALPHA = "moonbase_alpha"
    POLKADOT = "polkadot"

    @classmethod
    def get_block_time(cls, network: str) -> int:
        """Get block time in seconds for the specified network"""
        network = network.lower()
        if network in (cls.MOONBEAM.value, cls.MOONRIVER.value, cls.MOONBASE_ALPHA.value):
            return 12
        elif network == cls.POLKADOT.value:
            return 6
        raise ValueError(f"Unsupported network: {network}")


networks = [n.value for n in Network]

# Zero-account placeholder shown when a block carries no author
ZERO_ACCOUNT = "0x" + "00" * 32

IDENTITY_CACHE_TTL_SECONDS = 3600
IDENTITY_CACHE_MAX_ENTRIES = 10000
WEIGHT_PER_GAS = 25000


def retry_with_backoff(retries=5, backoff_in_seconds=2):
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            attempt = 0
            while attempt < retries:
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    attempt += 1
                    if attempt == retries:
                        logger.error(f"Failed after {retries} attempts. Last error: {str(e)}")
                        raise

                    sleep_time = backoff_in_seconds
                    logger.warning(
                        f"Attempt {attempt} failed with error: {str(e)}. "
                        f"Retrying in {sleep_time} seconds..."
                    )
                    time.sleep(sleep_time)
            return None

        return wrapper

    return decorator


load_dotenv()


def get_substrate_node_url(network):
    if network not in networks:
        raise ValueError(f"Unsupported network: {network}")

    node_ws_url = os.getenv(f"{network.upper()}_NODE_WS_URL")
    if not node_ws_url:
        raise ValueError(f"Node WebSocket URL not set for network: {network}. Please check your environment variables.")

    return node_ws_url


@dataclass(frozen=True)
class MonitorSettings:
    network: str
    node_ws_url: str
    concurrency: int = 5
    identity_cache_ttl_seconds: int = IDENTITY_CACHE_TTL_SECONDS
    identity_cache_max_entries: int = IDENTITY_CACHE_MAX_ENTRIES
    weight_per_gas: int = WEIGHT_PER_GAS
    token_decimals: int = 18
    executor_workers: int = 8


def get_monitor_settings(network: str) -> MonitorSettings:
    """Build monitor settings from MONITOR_* environment variables"""
    return MonitorSettings(
        network=network,
        node_ws_url=get_substrate_node_url(network),
        concurrency=int(os.getenv("MONITOR_CONCURRENCY", "5")),
        identity_cache_ttl_seconds=int(os.getenv("MONITOR_IDENTITY_CACHE_TTL_SECONDS", str(IDENTITY_CACHE_TTL_SECONDS))),
        identity_cache_max_entries=int(os.getenv("MONITOR_IDENTITY_CACHE_MAX_ENTRIES", str(IDENTITY_CACHE_MAX_ENTRIES))),
        weight_per_gas=int(os.getenv("MONITOR_WEIGHT_PER_GAS", str(WEIGHT_PER_GAS))),
        token_decimals=int(os.getenv("MONITOR_TOKEN_DECIMALS", str(get_network_token_decimals(network)))),
        executor_workers=int(os.getenv("MONITOR_EXECUTOR_WORKERS", "8")),
    )
