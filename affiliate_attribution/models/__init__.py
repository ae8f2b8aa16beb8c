from affiliate_attribution.models.attribution import (  # noqa: F401
    AffiliateStatus,
    AttributionModel,
    CommissionAppliesTo,
    CommissionPlanType,
    CommissionStatus,
    Confidence,
    FailureReason,
    TouchType,
)
