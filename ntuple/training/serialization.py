"""
Weight files, trainer checkpoints and host/device weight transfers.

Everything is stored as JSON through a ``Storage``, so a checkpoint is either fully written or not
written at all.
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import PurePath
from typing import Any

import numpy as np

from ntuple.exceptions import CheckpointError, WeightFormatError
from ntuple.neural.device_network import DeviceNetwork
from ntuple.neural.network import NTupleNetwork, check_weight_record
from ntuple.training.storage import Storage

logger = logging.getLogger(__name__)

CHECKPOINT_VERSION = 1
CHECKPOINT_TYPE = 'device'
MAX_EMERGENCY_CHECKPOINTS = 3


def encode_json(record: dict[str, Any]) -> bytes:
    return json.dumps(record, separators=(',', ':')).encode('utf-8')


def decode_json(data: bytes, what: str = 'record') -> dict[str, Any]:
    try:
        record = json.loads(data.decode('utf-8'))
    except (UnicodeDecodeError, json.JSONDecodeError) as error:
        raise CheckpointError(f'Corrupt {what}: {error}') from error
    if not isinstance(record, dict):
        raise CheckpointError(f'Corrupt {what}: expected an object')
    return record


# ##>: Weight files.


def save_weights(storage: Storage, name: str, network: NTupleNetwork, metadata: dict[str, Any] | None = None) -> None:
    """Write ``network`` as a versioned weight file."""
    storage.write_atomic(name, encode_json(network.export_weights(metadata)))
    logger.info('Saved weights to %s', name)


def load_weights_record(storage: Storage, name: str) -> dict[str, Any]:
    """
    Read a weight file.

    Raises
    ------
    WeightFormatError
        If the file is missing or is not a JSON object.
    """
    data = storage.read_all(name)
    if data is None:
        raise WeightFormatError(f'Weight file not found: {name}')
    try:
        return decode_json(data, 'weight file')
    except CheckpointError as error:
        raise WeightFormatError(str(error)) from error


def load_network(storage: Storage, name: str) -> NTupleNetwork:
    """Build a network from a weight file, patterns included."""
    return NTupleNetwork.from_record(load_weights_record(storage, name))


# ##>: Transfers between the host network and the device mirror.


@dataclass
class WeightTransferResult:
    """
    Outcome of a weight transfer.

    Attributes
    ----------
    success : bool
        Whether the transfer completed.
    weight_count : int
        Number of weights moved.
    transfer_time : float
        Duration in milliseconds.
    error : str | None
        Failure message.
    """

    success: bool
    weight_count: int
    transfer_time: float
    error: str | None = None


class WeightTransferManager:
    """
    Moves weights between a ``DeviceNetwork`` mirror and host records.

    Parameters
    ----------
    network : DeviceNetwork
        The device network to transfer from or to.
    """

    def __init__(self, network: DeviceNetwork):
        self.network = network

    def _timed(self, action) -> WeightTransferResult:
        start = time.perf_counter()
        try:
            action()
        except (WeightFormatError, ValueError, RuntimeError) as error:
            logger.warning('Weight transfer failed: %s', error)
            return WeightTransferResult(False, 0, (time.perf_counter() - start) * 1000, str(error))
        return WeightTransferResult(True, len(self.network.weights), (time.perf_counter() - start) * 1000)

    def export_to_host(self) -> WeightTransferResult:
        """Copy the device weights into the host network."""

        def action() -> None:
            self.network.weights = self.network.read_device_weights().astype(np.float32)
            self.network.sync_to_reference()

        return self._timed(action)

    def import_to_device(self, record: dict[str, Any] | None = None) -> WeightTransferResult:
        """Upload a weight record (or the current host weights) to the device."""
        if record is None:
            return self._timed(self.network.sync_from_reference)
        return self._timed(lambda: self.network.load_weights(record))

    def import_from_network(self, source: NTupleNetwork) -> WeightTransferResult:
        """Upload the weights of another host network with the same patterns."""
        return self.import_to_device(source.export_weights())

    def export_weights(self, metadata: dict[str, Any] | None = None) -> dict[str, Any]:
        return self.network.export_weights(metadata)

    def verify_round_trip(self, tolerance: float = 1e-6) -> bool:
        """Check that the device copy equals the host mirror within ``tolerance``."""
        device = self.network.read_device_weights()
        if device.shape != self.network.weights.shape:
            return False
        return bool(np.allclose(device, self.network.weights, atol=tolerance, rtol=0.0))


# ##>: Checkpoints.


@dataclass
class Checkpoint:
    """
    Resumable trainer state.

    Attributes
    ----------
    episode : int
        Completed episodes.
    current_learning_rate : float
        Learning rate in effect.
    weights : dict
        Weight record (see ``NTupleNetwork.export_weights``).
    device_state : dict
        ``batch_size``, ``gradient_accumulation_count``, optional ``accumulated_gradients`` and
        ``weight_stats``.
    milestone_count : dict
        Games that reached 2048, 4096 and 8192.
    recent_scores : list
        Latest final scores.
    config : dict
        Training configuration.
    stats : dict
        Free-form training statistics.
    """

    episode: int
    current_learning_rate: float
    weights: dict[str, Any]
    device_state: dict[str, Any]
    milestone_count: dict[str, int] = field(default_factory=lambda: {'tile2048': 0, 'tile4096': 0, 'tile8192': 0})
    recent_scores: list[float] = field(default_factory=list)
    config: dict[str, Any] = field(default_factory=dict)
    stats: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)
    checksum: str = ''
    emergency_info: dict[str, Any] | None = None

    def to_record(self) -> dict[str, Any]:
        record = {
            'version': CHECKPOINT_VERSION,
            'type': CHECKPOINT_TYPE,
            'config': self.config,
            'episode': self.episode,
            'current_learning_rate': self.current_learning_rate,
            'stats': self.stats,
            'milestone_count': self.milestone_count,
            'recent_scores': self.recent_scores,
            'weights': self.weights,
            'device_state': self.device_state,
            'timestamp': self.timestamp,
        }
        if self.emergency_info is not None:
            record['emergency_info'] = self.emergency_info
        record['checksum'] = compute_checksum(record)
        return record

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> Checkpoint:
        check_checkpoint_record(record)
        return cls(
            episode=int(record['episode']),
            current_learning_rate=float(record['current_learning_rate']),
            weights=record['weights'],
            device_state=record.get('device_state', {}),
            milestone_count=dict(record.get('milestone_count', {})),
            recent_scores=list(record.get('recent_scores', [])),
            config=record.get('config', {}),
            stats=record.get('stats', {}),
            timestamp=float(record.get('timestamp', 0.0)),
            checksum=record.get('checksum', ''),
            emergency_info=record.get('emergency_info'),
        )


def compute_checksum(record: dict[str, Any]) -> str:
    """First 16 hex digits of the sha256 of the checkpoint key fields."""
    weights = record['weights']['weights']
    key_data = {
        'version': record['version'],
        'type': record['type'],
        'episode': record['episode'],
        'weights_length': len(weights),
        'weights_sample': [list(table[:10]) for table in weights],
    }
    return hashlib.sha256(json.dumps(key_data, sort_keys=True).encode('utf-8')).hexdigest()[:16]


def check_checkpoint_record(record: dict[str, Any]) -> None:
    """
    Validate the envelope of a checkpoint record.

    Raises
    ------
    CheckpointError
        On a wrong version or type, missing fields, missing weights or a checksum mismatch.
    """
    if record.get('version') != CHECKPOINT_VERSION:
        raise CheckpointError(f'Invalid checkpoint version: {record.get("version")}')
    if record.get('type') != CHECKPOINT_TYPE:
        raise CheckpointError(f'Invalid checkpoint type: {record.get("type")}')
    for key in ('episode', 'current_learning_rate'):
        if key not in record:
            raise CheckpointError(f'Checkpoint is missing "{key}"')
    weights = record.get('weights')
    if not isinstance(weights, dict) or not isinstance(weights.get('weights'), list):
        raise CheckpointError('Checkpoint is missing weights data')
    if record.get('checksum') and record['checksum'] != compute_checksum(record):
        raise CheckpointError('Checkpoint checksum mismatch')


class CheckpointManager:
    """
    Saves and restores checkpoints through a ``Storage``.

    Parameters
    ----------
    storage : Storage
        Durable storage.
    checkpoint_name : str
        Name of the regular checkpoint.
    max_emergency : int
        Emergency checkpoints kept after cleanup.
    """

    def __init__(
        self, storage: Storage, checkpoint_name: str = 'checkpoint.json', max_emergency: int = MAX_EMERGENCY_CHECKPOINTS
    ):
        self.storage = storage
        self.checkpoint_name = checkpoint_name
        self.max_emergency = max_emergency

    @property
    def _emergency_prefix(self) -> str:
        path = PurePath(self.checkpoint_name)
        return str(path.with_name(f'{path.stem}.emergency.'))

    def save(self, checkpoint: Checkpoint, name: str | None = None) -> str:
        """
        Write a checkpoint atomically.

        Raises
        ------
        StorageError
            If the write fails; nothing is considered saved.
        """
        name = name or self.checkpoint_name
        record = checkpoint.to_record()
        self.storage.write_atomic(name, encode_json(record))
        checkpoint.checksum = record['checksum']
        logger.info('Checkpoint saved at episode %d to %s', checkpoint.episode, name)
        return name

    def save_emergency(self, checkpoint: Checkpoint, reason: str, error: str | None = None) -> str:
        """Write ``<stem>.emergency.<timestamp>.json`` and prune old emergency checkpoints."""
        stamp = int(checkpoint.timestamp * 1000)
        name = f'{self._emergency_prefix}{stamp}.json'
        checkpoint.emergency_info = {'reason': reason, 'error': error, 'timestamp': checkpoint.timestamp}
        self.save(checkpoint, name)
        self.cleanup_emergency_checkpoints()
        logger.warning('Emergency checkpoint written to %s (%s)', name, reason)
        return name

    def load(self, name: str | None = None) -> Checkpoint:
        """
        Read and validate a checkpoint.

        Raises
        ------
        CheckpointError
            If it is missing or invalid.
        """
        name = name or self.checkpoint_name
        data = self.storage.read_all(name)
        if data is None:
            raise CheckpointError(f'Checkpoint not found: {name}')
        return Checkpoint.from_record(decode_json(data, 'checkpoint'))

    def restore(self, checkpoint: Checkpoint, network: DeviceNetwork) -> None:
        """
        Load checkpoint weights and pending gradients into ``network``.

        Raises
        ------
        CheckpointError
            If the stored patterns do not match the network; the network is left untouched.
        """
        try:
            check_weight_record(checkpoint.weights, network.patterns)
        except WeightFormatError as error:
            raise CheckpointError(f'Checkpoint does not match the network: {error}') from error
        network.load_weights(checkpoint.weights)
        state = checkpoint.device_state
        count = int(state.get('gradient_accumulation_count', 0))
        network.restore_gradients(state.get('accumulated_gradients') if count else None, count)

    def has_checkpoint(self, name: str | None = None) -> bool:
        return self.storage.exists(name or self.checkpoint_name)

    def delete_checkpoint(self, name: str | None = None) -> bool:
        return self.storage.delete(name or self.checkpoint_name)

    def validate_checkpoint(self, name: str | None = None) -> dict[str, Any]:
        """
        Check a stored checkpoint without restoring it.

        Returns
        -------
        dict
            ``{'valid': bool, 'error'?: str, 'info'?: {episode, timestamp, weight_count, batch_size}}``.
        """
        try:
            checkpoint = self.load(name)
        except CheckpointError as error:
            return {'valid': False, 'error': str(error)}
        return {
            'valid': True,
            'info': {
                'episode': checkpoint.episode,
                'timestamp': checkpoint.timestamp,
                'weight_count': sum(len(table) for table in checkpoint.weights['weights']),
                'batch_size': checkpoint.device_state.get('batch_size'),
            },
        }

    def find_emergency_checkpoints(self) -> list[str]:
        """Emergency checkpoint names, newest first."""
        prefix = self._emergency_prefix

        def stamp(name: str) -> int:
            try:
                return int(name[len(prefix) :].split('.')[0])
            except ValueError:
                return 0

        return sorted(self.storage.list(prefix), key=stamp, reverse=True)

    def cleanup_emergency_checkpoints(self, keep: int | None = None) -> int:
        """Delete all but the ``keep`` newest emergency checkpoints; returns the number deleted."""
        keep = self.max_emergency if keep is None else keep
        stale = self.find_emergency_checkpoints()[keep:]
        for name in stale:
            self.storage.delete(name)
        return len(stale)
