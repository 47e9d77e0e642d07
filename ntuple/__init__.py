"""
N-Tuple TD-learning for 2048.

This package trains an N-Tuple value function by TD(0) on afterstates, playing many games in
lock-step on an accelerator when one is available and on numpy otherwise.

Submodules
----------
game : Batch execution
    - KernelSet: kernel contract, with SoftwareKernels (numpy) and JaxKernels (jax)
    - BatchSimulator: N games advanced in lock-step
neural : Value function
    - NTupleNetwork: host network in double precision
    - DeviceNetwork: device mirror with host-side gradient accumulation
    - DeviceEngine: accelerator detection, dispatch and software fallback
training : Training infrastructure
    - TrainingConfig: run configuration
    - Trainer: main training loop orchestrator
    - ErrorHandler, BatchSizeAdjuster, PerformanceMonitor: fault tolerance and monitoring
    - CheckpointManager, DeviceValidator: persistence and device cross-checks
"""
