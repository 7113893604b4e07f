"""Capacity planning for the image plus the configuration partition."""

from headless_usb.config.settings import DEFAULT_RESERVED_MIN_BYTES
from headless_usb.domain import CapacityBudget
from headless_usb.exceptions import InsufficientCapacityError
from headless_usb.logging import LoggerFactory

from .progress import human_size


log = LoggerFactory.for_device()


def plan(
    device_size_bytes: int,
    image_size_bytes: int,
    reserved_min_bytes: int = DEFAULT_RESERVED_MIN_BYTES,
) -> CapacityBudget:
    """Check the device can hold the image and a reserved tail.

    Raises:
        ValueError: If any size is negative
        InsufficientCapacityError: If the device is smaller than
            image_size_bytes + reserved_min_bytes
    """
    for name, value in (
        ("device_size_bytes", device_size_bytes),
        ("image_size_bytes", image_size_bytes),
        ("reserved_min_bytes", reserved_min_bytes),
    ):
        if value < 0:
            raise ValueError(f"{name} must not be negative: {value}")

    budget = CapacityBudget(
        device_size_bytes=device_size_bytes,
        image_size_bytes=image_size_bytes,
        reserved_min_bytes=reserved_min_bytes,
    )
    if device_size_bytes < budget.required_total_bytes:
        raise InsufficientCapacityError(budget.required_total_bytes, device_size_bytes)
    log.info(
        f"Capacity OK: image {human_size(image_size_bytes)} + reserved "
        f"{human_size(reserved_min_bytes)} fits {human_size(device_size_bytes)}"
    )
    return budget
