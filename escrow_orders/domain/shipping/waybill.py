from __future__ import annotations

import secrets
from typing import Callable

from escrow_orders.domain.errors import ShippingUnavailable
from escrow_orders.domain.orders.aggregates import ShippingMethod

# Carrier tracking formats: Nova Poshta numbers are 59000 followed by ten digits,
# Ukrposhta numbers are 05 followed by eleven digits.
TRACKING_FORMATS: dict[ShippingMethod, tuple[str, int]] = {
    ShippingMethod.NOVA_POSHTA: ("59000", 10),
    ShippingMethod.UKRPOSHTA: ("05", 11),
}


def generate_tracking_number(method: ShippingMethod | str) -> str:
    prefix, digits = TRACKING_FORMATS[ShippingMethod(method)]
    return prefix + "".join(str(secrets.randbelow(10)) for _ in range(digits))


def is_valid_tracking_number(method: ShippingMethod | str, value: str) -> bool:
    prefix, digits = TRACKING_FORMATS[ShippingMethod(method)]
    return value.startswith(prefix) and value.isdigit() and len(value) == len(prefix) + digits


def issue_unique_tracking_number(
    method: ShippingMethod | str,
    is_taken: Callable[[str], bool],
    attempts: int = 5,
) -> str:
    for _ in range(max(1, attempts)):
        candidate = generate_tracking_number(method)
        if not is_taken(candidate):
            return candidate
    raise ShippingUnavailable(f"could not allocate a unique {ShippingMethod(method).value} tracking number")
