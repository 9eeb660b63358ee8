from .base import Provider
from .relay import RelayProvider, get_relay_provider
from .relay_websocket import RelayStatusSocket
from .rpc import JsonRpcClient, RpcError
from .tenderly import TenderlyErrorInfo, TenderlyProvider, get_tenderly_provider

__all__ = [
    "Provider",
    "RelayProvider",
    "get_relay_provider",
    "RelayStatusSocket",
    "JsonRpcClient",
    "RpcError",
    "TenderlyErrorInfo",
    "TenderlyProvider",
    "get_tenderly_provider",
]
