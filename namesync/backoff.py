def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """Delay for the n-th consecutive failure (0-based), doubling up to cap."""
    if attempt < 0:
        attempt = 0
    return min(cap, base * (2 ** min(attempt, 30)))
