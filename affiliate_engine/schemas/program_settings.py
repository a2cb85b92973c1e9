"""Typed affiliate program settings with explicit default merge."""
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from affiliate_engine.models.commission import AttributionModel, CommissionType
from affiliate_engine.models.payout import PayoutFrequency
from affiliate_engine.schemas.base import StrictInputSchema


class ProgramSettings(BaseModel):
    """
    Effective affiliate program settings for one clinic.

    Every field has a hard-coded default; stored overrides are merged on
    top with merge_program_settings().
    """
    model_config = ConfigDict(extra='forbid', use_enum_values=True)

    # Attribution
    new_patient_model: AttributionModel = AttributionModel.FIRST_CLICK
    returning_patient_model: AttributionModel = AttributionModel.LAST_CLICK
    cookie_window_days: int = Field(30, ge=1, le=365)
    enable_fingerprinting: bool = True
    enable_sub_ids: bool = True

    # Commission defaults (used when no plan applies)
    default_commission_type: CommissionType = CommissionType.PERCENT
    default_percent_bps: int = Field(1000, ge=0, le=10000)
    default_flat_amount_cents: int = Field(0, ge=0)
    hold_days: int = Field(7, ge=0, le=365)
    clawback_enabled: bool = True

    # Payouts
    minimum_payout_cents: int = Field(5000, ge=0)
    payout_frequency: PayoutFrequency = PayoutFrequency.MONTHLY

    # Fraud
    fraud_enabled: bool = True
    max_conversions_per_day: int = Field(50, ge=1)
    max_conversions_per_ip: int = Field(3, ge=1)
    block_proxy_vpn: bool = False
    block_tor: bool = True
    auto_hold_on_high_risk: bool = True
    enable_self_referral_check: bool = True
    max_refund_rate_pct: int = Field(20, ge=0, le=100)
    min_refunds_for_alert: int = Field(5, ge=1)


class ProgramSettingsUpdate(StrictInputSchema):
    """Partial update; unknown keys are rejected with 422."""
    new_patient_model: Optional[AttributionModel] = None
    returning_patient_model: Optional[AttributionModel] = None
    cookie_window_days: Optional[int] = Field(None, ge=1, le=365)
    enable_fingerprinting: Optional[bool] = None
    enable_sub_ids: Optional[bool] = None
    default_commission_type: Optional[CommissionType] = None
    default_percent_bps: Optional[int] = Field(None, ge=0, le=10000)
    default_flat_amount_cents: Optional[int] = Field(None, ge=0)
    hold_days: Optional[int] = Field(None, ge=0, le=365)
    clawback_enabled: Optional[bool] = None
    minimum_payout_cents: Optional[int] = Field(None, ge=0)
    payout_frequency: Optional[PayoutFrequency] = None
    fraud_enabled: Optional[bool] = None
    max_conversions_per_day: Optional[int] = Field(None, ge=1)
    max_conversions_per_ip: Optional[int] = Field(None, ge=1)
    block_proxy_vpn: Optional[bool] = None
    block_tor: Optional[bool] = None
    auto_hold_on_high_risk: Optional[bool] = None
    enable_self_referral_check: Optional[bool] = None
    max_refund_rate_pct: Optional[int] = Field(None, ge=0, le=100)
    min_refunds_for_alert: Optional[int] = Field(None, ge=1)

    @model_validator(mode="after")
    def reject_explicit_nulls(self):
        for name in self.model_fields_set:
            if getattr(self, name) is None:
                raise ValueError(f"{name} cannot be null")
        return self


def merge_program_settings(overrides: Optional[Dict[str, Any]]) -> ProgramSettings:
    """
    Merge stored overrides over the defaults.

    Stored keys that are no longer part of the settings model are dropped
    so an old row can never break conversion processing.
    """
    known = ProgramSettings.model_fields.keys()
    clean = {k: v for k, v in (overrides or {}).items() if k in known}
    return ProgramSettings(**clean)
