from .abuse import AbuseFlag, AbuseFlagSeverity, AbuseFlagStatus, AbuseFlagType  # noqa: F401
from .balance import (  # noqa: F401
    PointsExpiration,
    PointsExpirationStatus,
    PointsHistory,
    PointsTransactionType,
    UserPointsBalance,
)
from .referral import ReferralRewardConfig, ReferralSlotAllocation, ReferralSlotReward  # noqa: F401
from .rules import EarningRule, EarningSourceType, ExpiryMode, ExpiryRule, ExpiryType, PointsConfig  # noqa: F401
from .tier import Benefit, Tier, TierBenefit  # noqa: F401
