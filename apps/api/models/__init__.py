"""Models package."""

from .user import User
from .credit_account import CreditAccount
from .credit_transaction import CreditTransaction
from .report import Report
from .analysis_asset import AnalysisAsset
