"""Default fare function. The engine only calls it through the PricingFn signature, so any pricing service can be injected."""
from collections.abc import Callable

PricingFn = Callable[[float, int, int], float]

BASE_FARE = 5.0
RATE_PER_KM = 2.5
# Pool size at which the sharing discount peaks (50%)
FULL_POOL_PASSENGERS = 4


def calculate_price(distance_km: float, seats: int, current_passengers: int) -> float:
    """Base fare plus per-seat distance rate, discounted as the pool fills up."""
    base_price = BASE_FARE + distance_km * RATE_PER_KM * seats
    passengers = min(max(current_passengers, 0), FULL_POOL_PASSENGERS)
    discount = base_price * (passengers / FULL_POOL_PASSENGERS) * 0.5
    return round(base_price - discount, 2)
