"""Fixed pass-through fee model. All amounts are integer cents."""

from dataclasses import dataclass, asdict

from django.conf import settings


@dataclass(frozen=True)
class FeeBreakdown:
    fare_cents: int
    rider_fee_cents: int
    driver_fee_cents: int
    total_charge_cents: int
    driver_payout_cents: int
    platform_fee_cents: int

    def as_ride_fields(self):
        fields = asdict(self)
        fields['estimated_fare_cents'] = fields.pop('fare_cents')
        return fields


def compute_fee_breakdown(fare_cents: int) -> FeeBreakdown:
    """
    Split a base fare into what the rider pays, what the driver earns
    and what the platform keeps.

    total = fare + rider fee, payout = fare - driver fee (never below
    zero), platform margin = whatever of the total is not paid out. The
    margin is rider fee + driver fee unless the fare is smaller than the
    driver fee.
    """
    if fare_cents < 0:
        raise ValueError("fare_cents must be non-negative")

    rider_fee = getattr(settings, 'RIDER_PLATFORM_FEE_CENTS', 150)
    driver_fee = getattr(settings, 'DRIVER_PLATFORM_FEE_CENTS', 150)
    total = fare_cents + rider_fee
    payout = max(fare_cents - driver_fee, 0)
    return FeeBreakdown(
        fare_cents=fare_cents,
        rider_fee_cents=rider_fee,
        driver_fee_cents=driver_fee,
        total_charge_cents=total,
        driver_payout_cents=payout,
        platform_fee_cents=total - payout,
    )
