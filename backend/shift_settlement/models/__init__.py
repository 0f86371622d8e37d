from .stores import Store
from .shifts import Shift
from .lottery import (
    LotteryGame,
    LotteryBin,
    LotteryPack,
    LotteryTicketSale,
    LotteryShiftOpening,
    LotteryShiftClosing,
    LotteryVariance,
)
from .audit import AuditEntry

__all__ = [
    'Store', 'Shift',
    'LotteryGame', 'LotteryBin', 'LotteryPack', 'LotteryTicketSale',
    'LotteryShiftOpening', 'LotteryShiftClosing', 'LotteryVariance',
    'AuditEntry',
]
