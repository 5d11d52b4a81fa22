"""
Three-layer standard atmosphere used for pressure/altitude conversion.

Troposphere (<= 11 km) follows the barometric power law, the lower
stratosphere (11-20 km) decays exponentially and the upper stratosphere
(> 20 km) follows an inverse power law. Each layer is anchored on the
pressure at its base so the curve is continuous at both seams.
Used by windfile.py (pressure level lookup) and the performance calculator
(burst altitude from burst pressure).
"""
import math
from functools import lru_cache

SEA_LEVEL_PRESSURE_HPA = 1013.25
SEA_LEVEL_TEMP_K = 288.15
LAPSE_RATE_K_M = 0.0065
# g0 * M / (R * L) for the ISA troposphere
TROPOSPHERE_EXPONENT = 5.25588

TROPOPAUSE_ALT_M = 11000.0
TROPOPAUSE_PRESSURE_HPA = 226.32
STRATOPAUSE_ALT_M = 20000.0
STRATOPAUSE_PRESSURE_HPA = 54.74

# Decay constant that carries 226.32 hPa at 11 km to exactly 54.74 hPa at 20 km
STRATOSPHERE_DECAY = math.log(TROPOPAUSE_PRESSURE_HPA / STRATOPAUSE_PRESSURE_HPA) / (
    STRATOPAUSE_ALT_M - TROPOPAUSE_ALT_M)

STRATOSPHERE_TEMP_K = 216.65
UPPER_LAPSE_RATE_K_M = 0.0028
UPPER_EXPONENT = 12.201

GAS_CONSTANT_AIR = 287.053  # J/(kg K)


def altitude_to_pressure(altitude):
    """Pressure in hPa at `altitude` metres."""
    if altitude <= TROPOPAUSE_ALT_M:
        return SEA_LEVEL_PRESSURE_HPA * (1 - LAPSE_RATE_K_M * altitude / SEA_LEVEL_TEMP_K) ** TROPOSPHERE_EXPONENT
    elif altitude <= STRATOPAUSE_ALT_M:
        return TROPOPAUSE_PRESSURE_HPA * math.exp(-STRATOSPHERE_DECAY * (altitude - TROPOPAUSE_ALT_M))
    else:
        return STRATOPAUSE_PRESSURE_HPA * (
            1 + UPPER_LAPSE_RATE_K_M * (altitude - STRATOPAUSE_ALT_M) / STRATOSPHERE_TEMP_K) ** -UPPER_EXPONENT


def pressure_to_altitude(pressure):
    """Altitude in metres at `pressure` hPa. Exact inverse of altitude_to_pressure()."""
    if pressure > TROPOPAUSE_PRESSURE_HPA:
        return (SEA_LEVEL_TEMP_K / LAPSE_RATE_K_M) * (
            1 - (pressure / SEA_LEVEL_PRESSURE_HPA) ** (1 / TROPOSPHERE_EXPONENT))
    elif pressure > STRATOPAUSE_PRESSURE_HPA:
        return TROPOPAUSE_ALT_M - math.log(pressure / TROPOPAUSE_PRESSURE_HPA) / STRATOSPHERE_DECAY
    else:
        return STRATOPAUSE_ALT_M + (STRATOSPHERE_TEMP_K / UPPER_LAPSE_RATE_K_M) * (
            (pressure / STRATOPAUSE_PRESSURE_HPA) ** (-1 / UPPER_EXPONENT) - 1)


def temperature(altitude):
    """Layer temperature in K at `altitude` metres."""
    if altitude <= TROPOPAUSE_ALT_M:
        return SEA_LEVEL_TEMP_K - LAPSE_RATE_K_M * altitude
    elif altitude <= STRATOPAUSE_ALT_M:
        return STRATOSPHERE_TEMP_K
    return STRATOSPHERE_TEMP_K + UPPER_LAPSE_RATE_K_M * (altitude - STRATOPAUSE_ALT_M)


def air_density(altitude):
    """Ideal-gas air density in kg/m^3 at `altitude` metres."""
    return altitude_to_pressure(altitude) * 100.0 / (GAS_CONSTANT_AIR * temperature(altitude))


# Cache altitude-to-pressure conversions (integrator samples the same metres repeatedly)
@lru_cache(maxsize=10000)
def _alt_to_hpa_cached(altitude_rounded):
    return altitude_to_pressure(altitude_rounded)


def alt_to_hpa(altitude):
    """Rounded, cached altitude to pressure conversion for hot loops."""
    return _alt_to_hpa_cached(round(altitude, 1))
