"""
Training infrastructure for N-Tuple TD-learning.

This package provides the complete training system:
- Config: run configuration
- Errors: failure classification and recovery decisions
- Capacity: adaptive batch sizing
- Monitor: kernel timings, throughput and warnings
- Storage / Serialization: weight files and checkpoints
- Validation: device against host cross-checks
- Trainer: main training loop orchestrator
"""

from .capacity import BatchSizeAdjuster, BatchSizeAdjustment, BatchSizeConfig
from .config import TrainingConfig, default_training_config, small_training_config
from .errors import ErrorHandler, ErrorHandlerConfig, ErrorHandlingResult, ErrorType, RecoveryAction, classify_error
from .monitor import MonitorConfig, PerformanceMonitor, PerformanceStats, WarningType
from .serialization import (
    Checkpoint,
    CheckpointManager,
    WeightTransferManager,
    WeightTransferResult,
    load_network,
    save_weights,
)
from .storage import FileStorage, MemoryStorage, Storage
from .trainer import Trainer, TrainingStats, train_ntuple
from .validation import (
    DeviceValidator,
    ValidationConfig,
    ValidationFailureHandler,
    ValidationFailureStrategy,
    ValidationResult,
)

__all__ = [
    # Config
    'TrainingConfig',
    'default_training_config',
    'small_training_config',
    # Errors
    'ErrorHandler',
    'ErrorHandlerConfig',
    'ErrorHandlingResult',
    'ErrorType',
    'RecoveryAction',
    'classify_error',
    # Capacity
    'BatchSizeAdjuster',
    'BatchSizeAdjustment',
    'BatchSizeConfig',
    # Monitor
    'MonitorConfig',
    'PerformanceMonitor',
    'PerformanceStats',
    'WarningType',
    # Persistence
    'Storage',
    'FileStorage',
    'MemoryStorage',
    'Checkpoint',
    'CheckpointManager',
    'WeightTransferManager',
    'WeightTransferResult',
    'load_network',
    'save_weights',
    # Validation
    'DeviceValidator',
    'ValidationConfig',
    'ValidationFailureHandler',
    'ValidationFailureStrategy',
    'ValidationResult',
    # Training
    'Trainer',
    'TrainingStats',
    'train_ntuple',
]
