"""Kubernetes resource quantity parsing for CPU cores and memory bytes."""

# Checked longest-first so "Mi" wins over "M"
_BINARY_SUFFIXES: tuple[tuple[str, int], ...] = (
    ("Ki", 1024),
    ("Mi", 1024**2),
    ("Gi", 1024**3),
    ("Ti", 1024**4),
    ("Pi", 1024**5),
    ("Ei", 1024**6),
)
_DECIMAL_SUFFIXES: tuple[tuple[str, float], ...] = (
    ("n", 1e-9),
    ("u", 1e-6),
    ("m", 1e-3),
    ("k", 1e3),
    ("M", 1e6),
    ("G", 1e9),
    ("T", 1e12),
    ("P", 1e15),
    ("E", 1e18),
)


def parse_quantity(quantity: str | int | float | None) -> float:
    """Parse a Kubernetes quantity string to a plain number.

    Handles binary suffixes ("512Mi", "1Gi"), decimal suffixes ("100m",
    "500000000n", "2G"), exponents ("1e3") and bare numbers.

    Returns:
        The numeric value. Returns 0.0 for empty or unparsable input.
    """
    if quantity is None or quantity == "":
        return 0.0
    if isinstance(quantity, (int, float)):
        return float(quantity)

    text = str(quantity).strip()
    for suffix, multiplier in _BINARY_SUFFIXES:
        if text.endswith(suffix):
            return _number(text[: -len(suffix)]) * multiplier
    for suffix, multiplier in _DECIMAL_SUFFIXES:
        if text.endswith(suffix):
            return _number(text[: -len(suffix)]) * multiplier
    return _number(text)


def _number(text: str) -> float:
    try:
        return float(text)
    except ValueError:
        return 0.0
