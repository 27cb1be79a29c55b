"""Models package."""

from .user import User
from .credit_ledger import CreditBalance, CreditTransaction
from .quota_window import RateWindow, SpendWindow
from .request_dedupe import RequestDedupe
from .spend_record import SpendRecord
from .streak import Streak
from .achievement import AchievementUnlock, ActionCounter
from .credit_purchase import CreditPurchase
