# Services module
from affiliate_engine.services.program_settings_service import ProgramSettingsService
from affiliate_engine.services.ref_code_service import RefCodeService
from affiliate_engine.services.touch_service import TouchService
from affiliate_engine.services.attribution_service import AttributionService
from affiliate_engine.services.fraud_service import FraudService
from affiliate_engine.services.commission_service import CommissionService
from affiliate_engine.services.commission_ledger import CommissionLedgerService
from affiliate_engine.services.payout_service import PayoutService
from affiliate_engine.services.affiliate_service import AffiliateService

# Reporting
from affiliate_engine.services.competition_service import CompetitionService
from affiliate_engine.services.leaderboard_service import LeaderboardService

__all__ = [
    "ProgramSettingsService",
    "RefCodeService",
    "TouchService",
    "AttributionService",
    "FraudService",
    "CommissionService",
    "CommissionLedgerService",
    "PayoutService",
    "AffiliateService",
    # Reporting
    "CompetitionService",
    "LeaderboardService",
]
