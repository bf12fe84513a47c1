"""
Outcome classifier — maps a DeliveryResult onto the retry taxonomy.

The code tables are data, loaded from settings, so new provider codes can
be added without touching the processor.
"""
from __future__ import annotations

from typing import Iterable

from config.settings import WhatsAppConfig
from models.schemas import DeliveryResult, OutcomeKind


class OutcomeClassifier:

    def __init__(
        self,
        rate_limit_codes: Iterable[int] = (),
        permanent_codes: Iterable[int] = (),
    ):
        self.rate_limit_codes = frozenset(int(c) for c in rate_limit_codes)
        self.permanent_codes = frozenset(int(c) for c in permanent_codes)

    @classmethod
    def from_config(cls, config: WhatsAppConfig) -> OutcomeClassifier:
        return cls(
            rate_limit_codes=config.rate_limit_codes,
            permanent_codes=config.permanent_error_codes,
        )

    def classify(self, result: DeliveryResult) -> OutcomeKind:
        if result.success:
            return OutcomeKind.SUCCESS
        code = result.error_code
        if code is None:
            return OutcomeKind.TRANSIENT
        # A code listed in both tables is treated as permanent
        if code in self.permanent_codes:
            return OutcomeKind.PERMANENT
        if code in self.rate_limit_codes:
            return OutcomeKind.RATE_LIMITED
        return OutcomeKind.TRANSIENT
