"""HTTP transfer layer.

Exports:
    HttpTransferClient: callback-driven streaming GETs with abort
    TransferRequest / TransferResponse / TransferCallbacks: its request and callback types
"""

from .client import (
    HttpTransferClient,
    TransferCallbacks,
    TransferRequest,
    TransferResponse,
    basic_auth_header,
)

__all__ = [
    "HttpTransferClient",
    "TransferCallbacks",
    "TransferRequest",
    "TransferResponse",
    "basic_auth_header",
]
