"""
Batch game execution: the kernel contract and the lock-step simulator.
"""

from .kernels import (
    EVALUATE,
    GAME_OVER,
    KERNEL_IDS,
    MAX_EXPONENT,
    MOVE,
    TUPLE_INDICES,
    JaxKernels,
    KernelSet,
    SoftwareKernels,
)
from .simulator import BatchGameState, BatchSimulator, MoveResult, StepResult

__all__ = [
    # Kernels
    'MOVE',
    'EVALUATE',
    'TUPLE_INDICES',
    'GAME_OVER',
    'MAX_EXPONENT',
    'KERNEL_IDS',
    'KernelSet',
    'SoftwareKernels',
    'JaxKernels',
    # Simulator
    'BatchGameState',
    'BatchSimulator',
    'MoveResult',
    'StepResult',
]
