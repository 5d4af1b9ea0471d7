"""
Settlement oracle.

Stands in for the payment network: given a pending payment it decides how
long settlement takes and whether it succeeds. A real integration replaces
``SimulatedSettlementOracle`` without touching the worker.
"""
import random
from dataclasses import dataclass
from typing import Optional

import config


@dataclass(frozen=True)
class SettlementOutcome:
    success: bool
    delay_seconds: float


class SettlementOracle:
    def settle(self, payment) -> SettlementOutcome:
        raise NotImplementedError


class SimulatedSettlementOracle(SettlementOracle):
    """
    Probability-based gateway simulation.

    In test mode the outcome and delay come from TEST_PAYMENT_SUCCESS and
    TEST_PROCESSING_DELAY. Otherwise the delay is uniform in
    [PROCESSING_DELAY_MIN, PROCESSING_DELAY_MAX] ms and the payment succeeds
    with UPI_SUCCESS_RATE for upi and CARD_SUCCESS_RATE for card.
    """

    def __init__(self, rng: Optional[random.Random] = None, test_mode: Optional[bool] = None):
        self.rng = rng or random.Random()
        self.test_mode = test_mode

    def settle(self, payment) -> SettlementOutcome:
        test_mode = config.TEST_MODE if self.test_mode is None else self.test_mode
        if test_mode:
            return SettlementOutcome(config.TEST_PAYMENT_SUCCESS, config.TEST_PROCESSING_DELAY / 1000.0)

        delay_ms = self.rng.randint(config.PROCESSING_DELAY_MIN, config.PROCESSING_DELAY_MAX)
        rate = config.UPI_SUCCESS_RATE if payment.method == "upi" else config.CARD_SUCCESS_RATE
        return SettlementOutcome(self.rng.random() < rate, delay_ms / 1000.0)


def refund_processing_delay(rng: Optional[random.Random] = None) -> float:
    rng = rng or random
    return rng.randint(config.REFUND_DELAY_MIN, config.REFUND_DELAY_MAX) / 1000.0
