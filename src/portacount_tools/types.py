"""Type definitions for PortaCount Tools."""

from typing import Callable, Tuple

# Particle concentration in particles/cm3, as reported by the device
Concentration = float

# Inclusive (low, high) range of a bounded command field
FieldRange = Tuple[float, float]

# Factory building a pyserial-compatible port object from keyword settings
SerialFactory = Callable[..., object]
