"""Ledger service exports."""

from .abuse_flags import AbuseFlagWorkflow, parse_flag_details  # noqa: F401
from .ledger import BalanceLedger, KeyedLocks, ReplayedBalance, replay_history  # noqa: F401
from .referrals import ReferralConfigService, ReferralSlotAllocator, ReferralSlotService  # noqa: F401
from .rules import EarningRuleService, ExpiryRuleService, PointsConfigService  # noqa: F401
from .tiers import BenefitService, TierBenefitService, TierService  # noqa: F401
