"""HTTP clients for the prime-broker (HRP) and quote (1Token) APIs."""

from .hrp import HrpClient
from .factory import HrpClientFactory
from .onetoken import OneTokenClient

__all__ = ["HrpClient", "HrpClientFactory", "OneTokenClient"]
