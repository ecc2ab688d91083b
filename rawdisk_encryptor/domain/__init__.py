"""Domain models for encrypted image builds."""

from .models import (
    AlignmentMode,
    BuildOptions,
    BuildResult,
    LuksState,
    LuksVolume,
    PartitionExtent,
    PartitionInfo,
    SizePlan,
    SourceImage,
    TargetImage,
    Tpm2Enrollment,
    partition_device_path,
)

__all__ = [
    "AlignmentMode",
    "BuildOptions",
    "BuildResult",
    "LuksState",
    "LuksVolume",
    "PartitionExtent",
    "PartitionInfo",
    "SizePlan",
    "SourceImage",
    "TargetImage",
    "Tpm2Enrollment",
    "partition_device_path",
]
