"""Outbound payment gateway clients."""
from .toss_payments import ChargeResult, TossPaymentsClient

__all__ = ["ChargeResult", "TossPaymentsClient"]
