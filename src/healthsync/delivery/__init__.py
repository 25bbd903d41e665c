"""Delivery to the remote gateway: the HTTP client and the Retry Queue."""

from src.healthsync.delivery.gateway import GatewayClient, build_headers, build_url
from src.healthsync.delivery.retry_queue import RetryQueue

__all__ = ["GatewayClient", "RetryQueue", "build_headers", "build_url"]
