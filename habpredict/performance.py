"""
Closed-form balloon performance calculator.

Derives ascent rate and burst altitude from payload, balloon and parachute
masses, measured neck lift and lifting gas, recording every intermediate
value as a CalculationStep so the derivation can be shown to the user.
Also provides the inverse "goal mode": payload / neck lift combinations that
reach a target burst altitude with a given balloon.
"""
import enum
import logging
import math
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from atmosphere import altitude_to_pressure, pressure_to_altitude

logger = logging.getLogger(__name__)

GRAVITY_MS2 = 9.80665
AIR_DENSITY_SEA_LEVEL_KGM3 = 1.225
GAS_DENSITY_HELIUM_KGM3 = 0.1786
GAS_DENSITY_HYDROGEN_KGM3 = 0.0899
BALLOON_DRAG_COEFFICIENT = 0.3
AVG_STRATOSPHERE_TEMP_K = 220.0  # ~ -53 C
SEA_LEVEL_TEMP_K = 288.15

# Empirical burst radius fit: r_burst = 0.479 * W_balloon ^ 0.3115 (m, g)
BURST_RADIUS_COEFFICIENT = 0.479
BURST_RADIUS_EXPONENT = 0.3115


class Gas(str, enum.Enum):
    HELIUM = "Helium"
    HYDROGEN = "Hydrogen"

    @property
    def density(self):
        return GAS_DENSITY_HELIUM_KGM3 if self is Gas.HELIUM else GAS_DENSITY_HYDROGEN_KGM3


@dataclass(frozen=True)
class CalculatorParams:
    """Masses and neck lift in grams."""
    payload_weight: float
    balloon_weight: float
    parachute_weight: float
    neck_lift: float
    gas: Gas = Gas.HELIUM


@dataclass(frozen=True)
class CalculationStep:
    name: str
    formula: str
    calculation: str
    result: str
    unit: str


@dataclass(frozen=True)
class CalculationBreakdown:
    steps: Tuple[CalculationStep, ...]
    ascent_rate: float
    burst_altitude: float

    def to_dict(self):
        return {
            "steps": [vars(s).copy() for s in self.steps],
            "ascent_rate": self.ascent_rate,
            "burst_altitude": self.burst_altitude,
        }


@dataclass(frozen=True)
class GoalOption:
    payload_weight: float
    neck_lift: float
    total_system_weight: float
    ascent_rate: float
    burst_altitude: float
    feasibility: str
    description: str


@dataclass
class GoalResult:
    target_burst_altitude: float
    options: List[GoalOption] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


def _is_valid(value):
    return value is not None and math.isfinite(value) and value >= 0


def _sphere_radius(volume):
    return (3 * volume / (4 * math.pi)) ** (1 / 3)


def _burst_volume(balloon_weight):
    burst_radius = BURST_RADIUS_COEFFICIENT * balloon_weight ** BURST_RADIUS_EXPONENT
    return burst_radius, (4 / 3) * math.pi * burst_radius ** 3


def _ascent_rate(neck_lift_kg, radius):
    """Terminal velocity where drag balances the free lift; None if undefined."""
    net_force = neck_lift_kg * GRAVITY_MS2
    drag_area = AIR_DENSITY_SEA_LEVEL_KGM3 * math.pi * radius ** 2 * BALLOON_DRAG_COEFFICIENT
    if net_force < 0 or drag_area <= 0:
        return None
    return math.sqrt(2 * net_force / drag_area)


def calculate_flight_performance(params: CalculatorParams, launch_altitude: float) -> Optional[CalculationBreakdown]:
    """
    Ascent rate (m/s) and burst altitude (m) with the full derivation.

    Returns None when the balloon mass is not positive or the derivation does
    not produce a finite, non-negative ascent rate and burst altitude.
    """
    payload, balloon, parachute = params.payload_weight, params.balloon_weight, params.parachute_weight
    neck_lift = params.neck_lift
    if balloon <= 0:
        return None

    gas = Gas(params.gas)
    steps = []

    # 1. Masses and lifts (kg)
    total_mass_kg = (payload + balloon + parachute) / 1000
    neck_lift_kg = neck_lift / 1000
    gross_lift_kg = total_mass_kg + neck_lift_kg
    steps.append(CalculationStep(
        name="Total Mass",
        formula="Mass_total = (W_payload + W_balloon + W_parachute) / 1000",
        calculation=f"Mass_total = ({payload:g} + {balloon:g} + {parachute:g}) / 1000",
        result=f"{total_mass_kg:.3f}",
        unit="kg",
    ))
    steps.append(CalculationStep(
        name="Gross Lift",
        formula="Lift_gross = Mass_total + (Lift_neck / 1000)",
        calculation=f"Lift_gross = {total_mass_kg:.3f} + ({neck_lift:g} / 1000)",
        result=f"{gross_lift_kg:.3f}",
        unit="kg",
    ))

    # 2. Gas properties
    lift_per_m3 = AIR_DENSITY_SEA_LEVEL_KGM3 - gas.density
    steps.append(CalculationStep(
        name="Gas Lift per m³",
        formula="Lift_per_m³ = ρ_air - ρ_gas",
        calculation=f"Lift_per_m³ = {AIR_DENSITY_SEA_LEVEL_KGM3} - {gas.density}",
        result=f"{lift_per_m3:.3f}",
        unit="kg/m³",
    ))

    # 3. Volume and radius at launch
    launch_volume = gross_lift_kg / lift_per_m3
    if launch_volume <= 0:
        logger.debug("Non-positive launch volume %.3f m3, no solution", launch_volume)
        return None
    launch_radius = _sphere_radius(launch_volume)
    steps.append(CalculationStep(
        name="Gas Volume at Launch",
        formula="V_launch = Lift_gross / Lift_per_m³",
        calculation=f"V_launch = {gross_lift_kg:.3f} / {lift_per_m3:.3f}",
        result=f"{launch_volume:.3f}",
        unit="m³",
    ))
    steps.append(CalculationStep(
        name="Balloon Radius at Launch",
        formula="r_launch = (3 * V_launch / (4 * π))^(1/3)",
        calculation=f"r_launch = (3 * {launch_volume:.3f} / (4 * π))^(1/3)",
        result=f"{launch_radius:.3f}",
        unit="m",
    ))

    # 4. Ascent rate from drag balance
    ascent_rate = _ascent_rate(neck_lift_kg, launch_radius)
    if not _is_valid(ascent_rate):
        logger.debug("Ascent rate undefined for neck lift %.1f g", neck_lift)
        return None
    steps.append(CalculationStep(
        name="Ascent Rate",
        formula="v_ascent = (2 * F_net / (ρ_air * π * r_launch² * C_d)) ^ 0.5",
        calculation=(f"v_ascent = (2 * ({neck_lift_kg:.3f} * {GRAVITY_MS2}) / "
                     f"({AIR_DENSITY_SEA_LEVEL_KGM3} * π * {launch_radius:.3f}² * {BALLOON_DRAG_COEFFICIENT})) ^ 0.5"),
        result=f"{ascent_rate:.3f}",
        unit="m/s",
    ))

    # 5. Burst size from the empirical balloon fit
    burst_radius, burst_volume = _burst_volume(balloon)
    steps.append(CalculationStep(
        name="Burst Radius (Empirical)",
        formula=f"r_burst = {BURST_RADIUS_COEFFICIENT} * W_balloon ^ {BURST_RADIUS_EXPONENT}",
        calculation=f"r_burst = {BURST_RADIUS_COEFFICIENT} * {balloon:g} ^ {BURST_RADIUS_EXPONENT}",
        result=f"{burst_radius:.3f}",
        unit="m",
    ))
    steps.append(CalculationStep(
        name="Burst Volume",
        formula="V_burst = (4/3) * π * r_burst³",
        calculation=f"V_burst = (4/3) * π * {burst_radius:.3f}³",
        result=f"{burst_volume:.3f}",
        unit="m³",
    ))

    # 6. Combined gas law: pressure at which the gas fills the burst volume
    launch_pressure = altitude_to_pressure(launch_altitude)
    burst_pressure = launch_pressure * (launch_volume / burst_volume) * (AVG_STRATOSPHERE_TEMP_K / SEA_LEVEL_TEMP_K)
    steps.append(CalculationStep(
        name="Pressure at Burst",
        formula="P_burst = P_launch * (V_launch / V_burst) * (T_burst / T_launch)",
        calculation=(f"P_burst = {launch_pressure:.2f} * ({launch_volume:.3f} / {burst_volume:.3f}) * "
                     f"({AVG_STRATOSPHERE_TEMP_K:g} / {SEA_LEVEL_TEMP_K})"),
        result=f"{burst_pressure:.3f}",
        unit="hPa",
    ))

    # 7. Altitude from pressure
    burst_altitude = pressure_to_altitude(burst_pressure)
    if not _is_valid(burst_altitude):
        logger.debug("Burst pressure %.3f hPa gives no valid burst altitude", burst_pressure)
        return None
    steps.append(CalculationStep(
        name="Burst Altitude",
        formula="Alt_burst = f(P_burst)",
        calculation=f"Alt_burst = f({burst_pressure:.3f})",
        result=f"{round(burst_altitude):,}",
        unit="m",
    ))

    return CalculationBreakdown(steps=tuple(steps), ascent_rate=ascent_rate, burst_altitude=burst_altitude)


def grade_ascent_rate(ascent_rate):
    """Feasibility grade for a planned ascent rate."""
    if 4.5 <= ascent_rate <= 5.5:
        return "excellent"
    if 4.0 <= ascent_rate <= 6.0:
        return "good"
    if 3.0 <= ascent_rate <= 7.0:
        return "marginal"
    return "poor"


def calculate_goal_options(target_burst_altitude, balloon_weight, parachute_weight, gas=Gas.HELIUM,
                           launch_altitude=0.0, ascent_rates=(4.0, 5.0, 6.0)) -> GoalResult:
    """
    Payload and neck lift combinations reaching `target_burst_altitude`.

    The burst altitude fixes the launch gas volume (combined gas law), hence the
    gross lift; each ascent rate then fixes the neck lift through the drag balance
    and the payload takes whatever gross lift remains.
    """
    gas = Gas(gas)
    result = GoalResult(target_burst_altitude=target_burst_altitude)
    if balloon_weight <= 0:
        result.warnings.append("Balloon weight must be positive.")
        return result
    if target_burst_altitude <= launch_altitude:
        result.warnings.append("Target burst altitude must be above the launch altitude.")
        return result

    _, burst_volume = _burst_volume(balloon_weight)
    burst_pressure = altitude_to_pressure(target_burst_altitude)
    launch_pressure = altitude_to_pressure(launch_altitude)
    launch_volume = burst_volume * (burst_pressure / launch_pressure) * (SEA_LEVEL_TEMP_K / AVG_STRATOSPHERE_TEMP_K)
    gross_lift_g = launch_volume * (AIR_DENSITY_SEA_LEVEL_KGM3 - gas.density) * 1000
    launch_radius = _sphere_radius(launch_volume)

    for rate in ascent_rates:
        drag_area = AIR_DENSITY_SEA_LEVEL_KGM3 * math.pi * launch_radius ** 2 * BALLOON_DRAG_COEFFICIENT
        neck_lift_g = rate ** 2 * drag_area / (2 * GRAVITY_MS2) * 1000
        payload_g = gross_lift_g - neck_lift_g - balloon_weight - parachute_weight
        if payload_g <= 0:
            result.warnings.append(
                f"A {balloon_weight:g} g balloon cannot lift any payload at {rate:g} m/s to "
                f"{target_burst_altitude:,.0f} m.")
            continue
        feasibility = grade_ascent_rate(rate)
        result.options.append(GoalOption(
            payload_weight=payload_g,
            neck_lift=neck_lift_g,
            total_system_weight=payload_g + balloon_weight + parachute_weight,
            ascent_rate=rate,
            burst_altitude=target_burst_altitude,
            feasibility=feasibility,
            description=f"{payload_g:.0f} g payload, {neck_lift_g:.0f} g neck lift at {rate:g} m/s",
        ))

    if not result.options:
        logger.info("No goal options for %.0f m with a %g g balloon", target_burst_altitude, balloon_weight)
    return result
