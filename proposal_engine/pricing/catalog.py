"""
Service catalog and multiplier tables for sealcoating quotes.
"""

from __future__ import annotations

from pydantic import BaseModel

from proposal_engine.models.enums import PricingTier, SurfaceCondition, UrgencyLevel


class ServiceDefinition(BaseModel):
    """A priced service and the measurement field that drives its quantity."""
    id: str
    name: str
    description: str
    unit: str
    unit_price: float
    measurement_field: str
    category: str = "maintenance"


SERVICE_CATALOG: dict[str, ServiceDefinition] = {
    s.id: s
    for s in [
        ServiceDefinition(
            id="sealcoating",
            name="Sealcoating",
            description="Commercial-grade coal tar or asphalt emulsion sealer, 2 coats",
            unit="sq ft",
            unit_price=0.22,
            measurement_field="net_sqft",
        ),
        ServiceDefinition(
            id="crack-filling",
            name="Crack Filling",
            description="Hot rubberized crack filler, cleaned and routed",
            unit="LF",
            unit_price=1.75,
            measurement_field="crack_linear_feet",
            category="repair",
        ),
        ServiceDefinition(
            id="pothole-repair",
            name="Pothole Repair",
            description="Saw cut, remove, and patch with hot mix asphalt",
            unit="each",
            unit_price=85.0,
            measurement_field="potholes",
            category="repair",
        ),
        ServiceDefinition(
            id="line-striping",
            name="Line Striping",
            description="Standard parking stall striping with traffic paint",
            unit="lines",
            unit_price=5.0,
            measurement_field="parking_stalls",
            category="striping",
        ),
        ServiceDefinition(
            id="ada-stalls",
            name="ADA Stalls",
            description="ADA-compliant handicap stall with symbol and signage layout",
            unit="stalls",
            unit_price=35.0,
            measurement_field="ada_stalls",
            category="striping",
        ),
        ServiceDefinition(
            id="arrows",
            name="Directional Arrows",
            description="Painted traffic flow arrows",
            unit="each",
            unit_price=18.0,
            measurement_field="arrows",
            category="striping",
        ),
        ServiceDefinition(
            id="fire-lane",
            name="Fire Lane Marking",
            description="Red curb painting with stenciled lettering",
            unit="LF",
            unit_price=2.0,
            measurement_field="fire_lane_feet",
            category="striping",
        ),
        ServiceDefinition(
            id="stencils",
            name="Custom Stencils",
            description="Custom stencil work (numbers, words, logos)",
            unit="each",
            unit_price=30.0,
            measurement_field="custom_stencils",
            category="striping",
        ),
    ]
}

TIER_MULTIPLIERS: dict[PricingTier, float] = {
    PricingTier.ECONOMY: 0.85,
    PricingTier.STANDARD: 1.0,
    PricingTier.PREMIUM: 1.35,
}

CONDITION_MULTIPLIERS: dict[SurfaceCondition, float] = {
    SurfaceCondition.GOOD: 1.0,
    SurfaceCondition.FAIR: 1.15,
    SurfaceCondition.POOR: 1.30,
}

# Display only; never applied to the authoritative total
URGENCY_MULTIPLIERS: dict[UrgencyLevel, float] = {
    UrgencyLevel.STANDARD: 1.0,
    UrgencyLevel.PRIORITY: 1.15,
    UrgencyLevel.EMERGENCY: 1.35,
}
