from affiliate_engine.models.clinic import Clinic
from affiliate_engine.models.affiliate import Affiliate, AffiliateRefCode, AffiliateStatus, PayoutMethodType
from affiliate_engine.models.touch import AffiliateTouch, TouchType, ANONYMIZED_FINGERPRINT
from affiliate_engine.models.commission import (
    CommissionPlan,
    ProductCommissionRule,
    CommissionTier,
    CommissionPromotion,
    AffiliateCommissionEvent,
    CommissionType,
    CommissionEventStatus,
    AttributionModel,
    PlanAppliesTo,
)
from affiliate_engine.models.payout import AffiliatePayout, PayoutStatus, PayoutFrequency
from affiliate_engine.models.competition import (
    AffiliateCompetition,
    AffiliateCompetitionEntry,
    CompetitionMetric,
    CompetitionStatus,
)
from affiliate_engine.models.program_settings import AffiliateProgramSettings
from affiliate_engine.models.fraud import (
    AffiliateFraudAlert,
    FraudAlertType,
    FraudAlertSeverity,
    FraudAlertStatus,
)
from affiliate_engine.models.job_lease import JobLease

__all__ = [
    "Clinic",
    "Affiliate", "AffiliateRefCode", "AffiliateStatus", "PayoutMethodType",
    "AffiliateTouch", "TouchType", "ANONYMIZED_FINGERPRINT",
    "CommissionPlan", "ProductCommissionRule", "CommissionTier", "CommissionPromotion",
    "AffiliateCommissionEvent",
    "CommissionType", "CommissionEventStatus", "AttributionModel", "PlanAppliesTo",
    "AffiliatePayout", "PayoutStatus", "PayoutFrequency",
    "AffiliateCompetition", "AffiliateCompetitionEntry", "CompetitionMetric", "CompetitionStatus",
    "AffiliateProgramSettings",
    "AffiliateFraudAlert", "FraudAlertType", "FraudAlertSeverity", "FraudAlertStatus",
    "JobLease",
]
