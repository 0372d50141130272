from .base import ComputeInstance, ComputeProvisioner, ComputeSpec, ComputeStatus
from .ecs import EcsComputeProvisioner

__all__ = [
    "ComputeInstance",
    "ComputeProvisioner",
    "ComputeSpec",
    "ComputeStatus",
    "EcsComputeProvisioner",
]
