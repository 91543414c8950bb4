"""External service integrations for the Mentr settlement engine."""

from .transfer_gateway import (
    FakeTransferGateway,
    RefundResult,
    StripeTransferGateway,
    TransferGateway,
    TransferResult,
    build_transfer_gateway,
)

__all__ = [
    "FakeTransferGateway",
    "RefundResult",
    "StripeTransferGateway",
    "TransferGateway",
    "TransferResult",
    "build_transfer_gateway",
]
