"""Domain models for the USB build pipeline."""

from __future__ import annotations

from .models import (
    CapacityBudget,
    Device,
    DiskTargetPolicy,
    FreeRegion,
    Manifest,
    ManifestOptions,
    NetworkConfig,
    PartitionHandle,
    PartitionPlan,
    TargetMode,
    Transport,
    UserAccount,
)


__all__ = [
    "CapacityBudget",
    "Device",
    "DiskTargetPolicy",
    "FreeRegion",
    "Manifest",
    "ManifestOptions",
    "NetworkConfig",
    "PartitionHandle",
    "PartitionPlan",
    "TargetMode",
    "Transport",
    "UserAccount",
]
