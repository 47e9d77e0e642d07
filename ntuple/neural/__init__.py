"""
N-Tuple value function: patterns, host network, device mirror and device engine.
"""

from .accelerator import BackendType, DeviceBuffer, DeviceConfig, DeviceEngine, DeviceInfo, create_device_engine
from .device_network import WEIGHT_LIMIT, DeviceNetwork
from .network import NTupleNetwork, calculate_learning_rate, check_weight_record
from .patterns import (
    CORNER_6TUPLE_PATTERNS,
    HORIZONTAL_4TUPLE_PATTERNS,
    RECTANGLE_6TUPLE_PATTERNS,
    ROW_COL_4TUPLE_PATTERNS,
    STANDARD_6TUPLE_PATTERNS,
    VERTICAL_4TUPLE_PATTERNS,
    SymmetryIndexTable,
    calculate_lut_size,
    pattern_weight_count,
    symmetric_patterns,
    validate_patterns,
)

__all__ = [
    # Patterns
    'STANDARD_6TUPLE_PATTERNS',
    'HORIZONTAL_4TUPLE_PATTERNS',
    'VERTICAL_4TUPLE_PATTERNS',
    'RECTANGLE_6TUPLE_PATTERNS',
    'CORNER_6TUPLE_PATTERNS',
    'ROW_COL_4TUPLE_PATTERNS',
    'SymmetryIndexTable',
    'calculate_lut_size',
    'pattern_weight_count',
    'symmetric_patterns',
    'validate_patterns',
    # Networks
    'NTupleNetwork',
    'DeviceNetwork',
    'WEIGHT_LIMIT',
    'calculate_learning_rate',
    'check_weight_record',
    # Device
    'BackendType',
    'DeviceBuffer',
    'DeviceConfig',
    'DeviceEngine',
    'DeviceInfo',
    'create_device_engine',
]
